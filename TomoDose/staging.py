"""
Dose engine input staging.

Writes the files read by the dose engine into a fresh staging directory:

    ct.header     image geometry and density calibration
    ct_0.img      CT numbers, little-endian uint16, x fastest
    dose.cfg      solver configuration (dose grid, quality knobs)
    *.*           beam model files copied from the model folder
    plan.header   delivery events, leaf counts and scale
    plan.img      leaf-major (open, close) stream, little-endian float64

Image files are written once per image; plan files are rewritten for every
job. A remote engine receives a mirror of the directory.
"""

import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import numpy as np

from .config import DoseOptions
from .engine import Engine, RESULT_FILE
from .errors import StagingError, UnsupportedRegistrationError
from .grid_utils import GridInfo, validate_downsample
from .plan import ImageVolume, RegistrationCorrection
from .sinogram import N_LEAF_POSITIONS, LeafSinogram, write_delivery_stream
from .timeline import EventKind, EventTimeline, TimelineEvent

logger = logging.getLogger(__name__)

GEOMETRY_HEADER = "ct.header"
VOXEL_GRID = "ct_0.img"
SOLVER_CONFIG = "dose.cfg"
DELIVERY_HEADER = "plan.header"
DELIVERY_STREAM = "plan.img"
PLAN_FILES = (DELIVERY_HEADER, DELIVERY_STREAM)

MODEL_FILE_PATTERN = "*.*"


@dataclass
class StagedInputs:
    """A staging directory holding the image inputs of one image."""
    folder: Path
    image: ImageVolume
    downsample: int
    options: DoseOptions
    dose_grid: GridInfo
    model_files: List[str]


def validate_registration(registration: RegistrationCorrection) -> None:
    if registration.pitch != 0 or registration.yaw != 0:
        raise UnsupportedRegistrationError(
            "Dose calculation cannot handle pitch or yaw corrections "
            f"(pitch={registration.pitch:g}, yaw={registration.yaw:g})"
        )


def geometry_header_lines(image: ImageVolume) -> List[str]:
    # The engine's y axis is the flipped IEC-z axis and its z axis is IEC-y;
    # CT rows run top down, hence flipy.
    corner = image.corner_start
    lines = image.ivdt.header_lines()
    lines += [
        "cs.dim.x=%i" % image.dimensions[0],
        "cs.dim.y=%i" % image.dimensions[1],
        "cs.dim.z=%i" % image.dimensions[2],
        "cs.flipy=true",
        "cs.slicebounds=" + " ".join("%G" % b for b in image.slice_bounds()),
        "cs.start.x=%G" % corner[0],
        "cs.start.y=%G" % corner[1],
        "cs.start.z=%G" % corner[2],
        "cs.width.x=%G" % image.width[0],
        "cs.width.y=%G" % image.width[1],
        "cs.width.z=%G" % image.width[2],
        "phase.0.theta=0",
    ]
    return lines


def solver_config_lines(dose_grid: GridInfo, options: DoseOptions) -> List[str]:
    """
    dose.cfg contents for a (possibly downsampled) dose grid.

    The engine derives the z axis of the dose grid from the CT.
    """
    lines = [
        "console.errors=true",
        "console.info=true",
        "console.locate=true",
        "console.trace=true",
        "console.warnings=true",
        "dose.cache.path=/var/cache/tomo",
        "dose.grid.dim.x=%i" % dose_grid.dimensions[0],
        "dose.grid.dim.y=%i" % dose_grid.dimensions[1],
        "dose.grid.start.x=%G" % dose_grid.start[0],
        "dose.grid.start.y=%G" % dose_grid.start[1],
        "dose.grid.width.x=%G" % dose_grid.width[0],
        "dose.grid.width.y=%G" % dose_grid.width[1],
        "dose.sampleAngleMotion=%s" % ("true" if options.super_sample else "false"),
        "dose.azimuths=%i" % options.azimuths,
        "dose.xRayRate=%i" % options.ray_steps,
        "dose.zRayRate=%i" % options.ray_steps,
    ]
    if not options.use_secondary_engine:
        lines += [
            "nvbb.sourceSuperSample=%i" % (1 if options.super_sample else 0),
            "nvbb.azimuths=%i" % options.azimuths,
            "nvbb.fluenceXRate=%i" % options.ray_steps,
            "nvbb.fluenceZRate=%i" % options.ray_steps,
            "nvbb.fluenceXStep=%i" % options.ray_steps,
            "nvbb.fluenceZStep=%i" % options.ray_steps,
        ]
    lines.append("outfile=%s" % RESULT_FILE)
    return lines


def corrected_value(event: TimelineEvent, registration: RegistrationCorrection):
    """Event value with the registration folded in (isocenter in cm, gantry in degrees)."""
    if event.kind == EventKind.ISO_X:
        return event.value - registration.x
    if event.kind == EventKind.ISO_Y:
        return event.value + registration.z
    if event.kind == EventKind.ISO_Z:
        return event.value - registration.y
    if event.kind == EventKind.GANTRY_ANGLE:
        return event.value + registration.roll_degrees
    return event.value


def delivery_header_lines(timeline: EventTimeline, sinogram: LeafSinogram,
                          scale: float, registration: RegistrationCorrection) -> List[str]:
    lines = []
    for i, event in enumerate(timeline):
        lines.append("event.%02i.tau=%0.1f" % (i, event.tau))
        lines.append("event.%02i.type=%s" % (i, event.kind.value))
        if event.has_value:
            lines.append("event.%02i.value=%G" % (i, corrected_value(event, registration)))

    active = sinogram.leaf_rows
    for leaf in range(N_LEAF_POSITIONS):
        count = sinogram.number_of_projections if leaf in active else 0
        lines.append("leaf.count.%02i=%i" % (leaf, count))

    lines.append("scale=%G" % scale)
    return lines


def _write_lines(path: Path, lines: List[str]) -> None:
    path.write_text("\n".join(lines) + "\n", encoding="ascii")


class InputStager:
    """
    Serializes dose engine inputs.

    Parameters
    ----------
    temp_root : str or Path, optional
        Parent of the staging directories (system temp directory by default)
    """

    def __init__(self, temp_root=None):
        self.temp_root = temp_root
        self.model_copies = 0

    def validate(self, request, image: ImageVolume, downsample: int) -> None:
        """Reject unsupported inputs before any file is written."""
        validate_registration(request.plan.registration)
        validate_downsample(image.dimensions, downsample)

    def stage(self, request, engine: Engine, downsample: int) -> StagedInputs:
        """Validate and write every input of a request with a new image."""
        self.validate(request, request.image, downsample)
        options = request.options or DoseOptions()
        staged = self.stage_image(request.image, options, engine, downsample)
        self.stage_plan(request, staged, engine)
        return staged

    def stage_image(self, image: ImageVolume, options: DoseOptions, engine: Engine,
                    downsample: int) -> StagedInputs:
        try:
            folder = Path(tempfile.mkdtemp(prefix="tomodose_", dir=self.temp_root))
        except OSError as err:
            raise StagingError(f"Error creating temporary folder for dose calculation: {err}") from err
        logger.info("Temporary folder created at %s", folder)

        dose_grid = GridInfo.from_image(image).downsampled(downsample)
        try:
            self.write_geometry_header(folder, image)
            self.write_voxel_grid(folder, image)
            self.write_solver_config(folder, dose_grid, options)
        except OSError as err:
            raise StagingError(f"Error writing image inputs to {folder}: {err}") from err
        model_files = self.copy_model_files(options.model_folder, folder)

        engine.mirror(folder, exclude=PLAN_FILES)

        return StagedInputs(
            folder=folder,
            image=image,
            downsample=downsample,
            options=options,
            dose_grid=dose_grid,
            model_files=model_files,
        )

    def stage_plan(self, request, staged: StagedInputs, engine: Engine) -> None:
        plan = request.plan
        try:
            self.write_delivery_header(staged.folder, request.timeline, request.sinogram,
                                       plan.scale, plan.registration)
            self.write_delivery_stream(staged.folder, request.sinogram)
        except OSError as err:
            raise StagingError(f"Error writing plan inputs to {staged.folder}: {err}") from err
        engine.push(staged.folder, PLAN_FILES)

    def cleanup(self, staged: StagedInputs) -> None:
        """Remove a staging directory that is no longer needed."""
        logger.info("Removing staging folder %s", staged.folder)
        try:
            shutil.rmtree(staged.folder)
        except FileNotFoundError:
            pass
        except OSError as err:
            logger.warning("Could not remove staging folder %s: %s", staged.folder, err)

    def write_geometry_header(self, folder: Path, image: ImageVolume) -> Path:
        path = Path(folder) / GEOMETRY_HEADER
        logger.info("Writing %s to %s", GEOMETRY_HEADER, folder)
        _write_lines(path, geometry_header_lines(image))
        return path

    def write_voxel_grid(self, folder: Path, image: ImageVolume) -> Path:
        path = Path(folder) / VOXEL_GRID
        logger.info("Writing %s to %s", VOXEL_GRID, folder)
        data = np.asarray(image.data)
        if data.dtype != np.uint16 and (np.min(data) < 0 or np.max(data) > np.iinfo(np.uint16).max):
            raise StagingError(
                f"Image '{image.uid}' has values outside the uint16 range "
                f"[{np.min(data)}, {np.max(data)}]"
            )
        np.ascontiguousarray(data, dtype="<u2").tofile(str(path))
        low, high = image.ivdt.convert([np.min(data), np.max(data)])
        logger.info("Image density range %0.3f - %0.3f g/cc (%s)", low, high, image.ivdt.name)
        return path

    def write_solver_config(self, folder: Path, dose_grid: GridInfo, options: DoseOptions) -> Path:
        path = Path(folder) / SOLVER_CONFIG
        logger.info("Writing %s to %s", SOLVER_CONFIG, folder)
        _write_lines(path, solver_config_lines(dose_grid, options))
        return path

    def copy_model_files(self, model_folder, folder: Path) -> List[str]:
        """Copy the beam model files; they do not vary per patient for one machine."""
        model_folder = Path(model_folder)
        logger.info("Copying beam model files from %s to %s", model_folder, folder)
        sources = sorted(p for p in model_folder.glob(MODEL_FILE_PATTERN) if p.is_file())
        if not sources:
            raise StagingError(f"No beam model files found in {model_folder}")
        try:
            for src in sources:
                shutil.copy2(src, Path(folder) / src.name)
        except OSError as err:
            raise StagingError(f"Error occurred copying beam model files to {folder}: {err}") from err
        self.model_copies += 1
        return [p.name for p in sources]

    def write_delivery_header(self, folder: Path, timeline: EventTimeline, sinogram: LeafSinogram,
                              scale: float, registration: Optional[RegistrationCorrection] = None) -> Path:
        registration = registration or RegistrationCorrection()
        path = Path(folder) / DELIVERY_HEADER
        logger.info("Writing %s to %s", DELIVERY_HEADER, folder)
        if not registration.is_identity():
            logger.info("Applied registration adjustment: roll %G degrees, isocenter (%G, %G, %G) cm",
                        registration.roll_degrees, registration.x, registration.y, registration.z)
        _write_lines(path, delivery_header_lines(timeline, sinogram, scale, registration))
        return path

    def write_delivery_stream(self, folder: Path, sinogram: LeafSinogram) -> Path:
        path = Path(folder) / DELIVERY_STREAM
        logger.info("Writing %s to %s", DELIVERY_STREAM, folder)
        write_delivery_stream(path, sinogram)
        return path
