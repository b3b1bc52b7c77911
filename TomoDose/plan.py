import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np
import SimpleITK as sitk
import yaml

from .ct_calibration import DensityCalibration


class ImageVolume:
    """
    Planning image handed to the dose engine.

    Parameters
    ----------
    data : np.ndarray
        CT numbers, shape (nz, ny, nx)
    start : array-like
        Center of the first voxel [x, y, z] in cm
    width : array-like
        Voxel widths [x, y, z] in cm
    ivdt : DensityCalibration
        CT number to density curve of the scanner
    uid : str, optional
        Identifier used in logs and error messages

    Notes
    -----
    ``dimensions`` follows SimpleITK ordering [nx, ny, nz] while ``data`` is
    stored (z, y, x). C-order bytes of ``data`` are therefore x-fastest,
    which is the order the dose engine reads.
    """

    def __init__(self, data, start, width, ivdt, uid=None):
        self.data = np.asarray(data)
        self.start = np.array(start, dtype=np.float64)
        self.width = np.array(width, dtype=np.float64)
        self.dimensions = np.array(self.data.shape[::-1], dtype=np.int64)
        self.ivdt = ivdt
        self.uid = uid or ""

        if self.data.ndim != 3:
            raise ValueError(f"Image data must be 3D, got shape {self.data.shape}")
        if self.start.shape != (3,) or self.width.shape != (3,):
            raise ValueError("Image start and width must have 3 elements [x, y, z]")
        if np.any(self.width <= 0):
            raise ValueError(f"Voxel widths must be > 0, got {self.width}")
        if not isinstance(ivdt, DensityCalibration):
            raise TypeError("ivdt must be a DensityCalibration instance")

    @property
    def corner_start(self) -> np.ndarray:
        """Corner of the first voxel; the engine references voxel corners, not centers."""
        return self.start - self.width / 2.0

    def slice_bounds(self) -> np.ndarray:
        """The nz + 1 boundaries of the axial slices along z, in cm."""
        nz = int(self.dimensions[2])
        return np.arange(nz + 1) * self.width[2] + self.corner_start[2]

    @property
    def n_voxels(self) -> int:
        return int(np.prod(self.dimensions))

    @classmethod
    def from_nrrd(cls, image_path, ivdt, uid=None):
        """Load an image volume from NRRD (or any SimpleITK readable file)."""
        img = sitk.ReadImage(str(image_path))
        # SimpleITK geometry is in mm
        origin = np.array(img.GetOrigin(), dtype=np.float64) / 10.0
        spacing = np.array(img.GetSpacing(), dtype=np.float64) / 10.0
        data = sitk.GetArrayFromImage(img)
        return cls(data, origin, spacing, ivdt, uid=uid or Path(image_path).stem)

    def __repr__(self):
        return (f"ImageVolume(uid='{self.uid}', dimensions={self.dimensions.tolist()}, "
                f"width={self.width.tolist()})")


class DoseVolume:
    """Calculated dose on the native image grid, shape (nz, ny, nx)."""

    def __init__(self, data, start, width, dimensions):
        self.data = data
        self.start = np.array(start, dtype=np.float64)
        self.width = np.array(width, dtype=np.float64)
        self.dimensions = np.array(dimensions, dtype=np.int64)

    @property
    def max_dose(self) -> float:
        return float(np.max(self.data)) if self.data.size else 0.0

    def write_nrrd(self, dose_path):

        if not str(dose_path).endswith(".nrrd"):
            raise ValueError("Dose path must have .nrrd extension")

        dose_img = sitk.GetImageFromArray(np.array(self.data, dtype=np.single))
        # SimpleITK requires native Python tuple of floats in mm
        dose_img.SetOrigin(tuple(float(x) * 10.0 for x in self.start))
        dose_img.SetSpacing(tuple(float(x) * 10.0 for x in self.width))

        fw = sitk.ImageFileWriter()
        fw.SetFileName(str(dose_path))
        fw.Execute(dose_img)


@dataclass(frozen=True)
class RegistrationCorrection:
    """Rigid offsets applied to the delivery before calculation.

    Angles are in radians, translations in cm (IEC axes).
    """
    pitch: float = 0.0
    yaw: float = 0.0
    roll: float = 0.0
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    @classmethod
    def from_sequence(cls, values):
        values = [float(v) for v in values]
        if len(values) != 6:
            raise ValueError(f"Registration needs 6 values (pitch, yaw, roll, x, y, z), got {len(values)}")
        return cls(*values)

    @property
    def roll_degrees(self) -> float:
        return self.roll * 180.0 / math.pi

    def is_identity(self) -> bool:
        return not any((self.pitch, self.yaw, self.roll, self.x, self.y, self.z))


@dataclass
class RawActions:
    """Delivery actions as extracted from the archived plan.

    Unsynchronized values apply at tau = 0. Synchronized records carry
    their own tau: gantry velocities (tau, velocity), jaw velocities
    (tau, front, back) and isocenter velocities (tau, z_velocity).
    """
    gantry_angle: Optional[float] = None
    jaw_front: Optional[float] = None
    jaw_back: Optional[float] = None
    iso_x: Optional[float] = None
    iso_y: Optional[float] = None
    iso_z: Optional[float] = None
    gantry_velocities: List[Tuple[float, float]] = field(default_factory=list)
    jaw_velocities: List[Tuple[float, float, float]] = field(default_factory=list)
    isocenter_velocities: List[Tuple[float, float]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d):
        d = d or {}
        unsync = d.get("unsynchronized", {}) or {}
        sync = d.get("synchronized", {}) or {}

        def _opt(key):
            value = unsync.get(key)
            return None if value is None else float(value)

        return cls(
            gantry_angle=_opt("gantry_angle"),
            jaw_front=_opt("jaw_front"),
            jaw_back=_opt("jaw_back"),
            iso_x=_opt("iso_x"),
            iso_y=_opt("iso_y"),
            iso_z=_opt("iso_z"),
            gantry_velocities=[
                (float(r["tau"]), float(r["velocity"])) for r in sync.get("gantry_velocity", [])
            ],
            jaw_velocities=[
                (float(r["tau"]), float(r["front_velocity"]), float(r["back_velocity"]))
                for r in sync.get("jaw_velocity", [])
            ],
            isocenter_velocities=[
                (float(r["tau"]), float(r["z_velocity"])) for r in sync.get("isocenter_velocity", [])
            ],
        )


@dataclass
class PlanRecord:
    """Delivery plan metadata needed to reconstruct the timeline."""
    scale: float
    total_tau: Optional[float]
    lower_leaf_index: int
    number_of_projections: int
    number_of_leaves: int
    sinogram_path: Path
    actions: RawActions = field(default_factory=RawActions)
    registration: RegistrationCorrection = field(default_factory=RegistrationCorrection)
    plan_uid: str = ""
    label: str = ""

    def __post_init__(self):
        self.sinogram_path = Path(self.sinogram_path)
        if self.number_of_leaves <= 0 or self.number_of_projections <= 0:
            raise ValueError(
                f"Plan '{self.label or self.plan_uid}': leaf and projection counts must be > 0 "
                f"(got {self.number_of_leaves} leaves, {self.number_of_projections} projections)"
            )

    @property
    def identifier(self) -> str:
        return self.label or self.plan_uid or self.sinogram_path.name


def load_plan_record(path) -> PlanRecord:
    """
    Load a PlanRecord from a YAML or JSON description.

    A relative ``sinogram`` path is resolved against the description's
    directory, as binary file names are stored relative to the archive.
    """
    path = Path(path)
    with open(path, "r", encoding="utf-8") as f:
        if path.suffix.lower() in {".yaml", ".yml"}:
            cfg = yaml.safe_load(f)
        else:
            cfg = json.load(f)

    sinogram_path = Path(cfg["sinogram"])
    if not sinogram_path.is_absolute():
        sinogram_path = path.parent / sinogram_path

    registration = cfg.get("registration")
    total_tau = cfg.get("total_tau")

    return PlanRecord(
        scale=float(cfg["scale"]),
        total_tau=None if total_tau is None else float(total_tau),
        lower_leaf_index=int(cfg["lower_leaf_index"]),
        number_of_projections=int(cfg["number_of_projections"]),
        number_of_leaves=int(cfg["number_of_leaves"]),
        sinogram_path=sinogram_path,
        actions=RawActions.from_dict(cfg.get("actions")),
        registration=(RegistrationCorrection.from_sequence(registration)
                      if registration is not None else RegistrationCorrection()),
        plan_uid=str(cfg.get("plan_uid", "")),
        label=str(cfg.get("label", "")),
    )
