"""
Test dose engine input staging.

Validates the file contents the dose engine reads:
- ct.header geometry and calibration
- ct_0.img voxel order
- dose.cfg dose grid for native and downsampled calculations
- plan.header events (registration folded in), leaf counts and scale
"""

import logging
import math
from dataclasses import replace

import numpy as np
import pytest

from TomoDose.calc_dose import DoseJobRequest
from TomoDose.config import DoseOptions
from TomoDose.engine import Engine
from TomoDose.errors import InvalidDownsampleError, StagingError, UnsupportedRegistrationError
from TomoDose.grid_utils import GridInfo
from TomoDose.plan import ImageVolume, RegistrationCorrection
from TomoDose.staging import (
    PLAN_FILES,
    InputStager,
    delivery_header_lines,
    geometry_header_lines,
    solver_config_lines,
    validate_registration,
)


class RecordingEngine(Engine):
    """Engine that records what it is asked to mirror and push."""

    def __init__(self):
        self.mirrored = []
        self.pushed = []

    def mirror(self, local_dir, exclude=()):
        present = sorted(p.name for p in local_dir.iterdir())
        self.mirrored.append((present, tuple(exclude)))

    def push(self, local_dir, names):
        self.pushed.append(tuple(names))


def _lines(path):
    return path.read_text().splitlines()


def test_geometry_header(image):
    lines = geometry_header_lines(image)

    assert lines == [
        "calibration.ctNums=0 1000 3000",
        "calibration.densVals=0 1 2.5",
        "cs.dim.x=6",
        "cs.dim.y=4",
        "cs.dim.z=2",
        "cs.flipy=true",
        "cs.slicebounds=-0.25 0.25 0.75",
        "cs.start.x=-0.05",
        "cs.start.y=-0.05",
        "cs.start.z=-0.25",
        "cs.width.x=0.1",
        "cs.width.y=0.1",
        "cs.width.z=0.5",
        "phase.0.theta=0",
    ]


def test_solver_config_downsampled(image):
    grid = GridInfo.from_image(image).downsampled(2)

    lines = solver_config_lines(grid, DoseOptions(azimuths=8, ray_steps=2, super_sample=True))

    assert "dose.grid.dim.x=3" in lines
    assert "dose.grid.dim.y=2" in lines
    assert "dose.grid.start.x=-0.05" in lines
    assert "dose.grid.start.y=-0.05" in lines
    assert "dose.grid.width.x=0.2" in lines
    assert "dose.grid.width.y=0.2" in lines
    assert "dose.azimuths=8" in lines
    assert "dose.xRayRate=2" in lines
    assert "dose.zRayRate=2" in lines
    assert "dose.sampleAngleMotion=true" in lines
    assert "nvbb.sourceSuperSample=1" in lines
    assert "nvbb.fluenceXStep=2" in lines
    assert lines[-1] == "outfile=dose.img"


def test_solver_config_secondary_engine(image):
    grid = GridInfo.from_image(image)

    lines = solver_config_lines(grid, DoseOptions(use_secondary_engine=True))

    assert "dose.grid.dim.x=6" in lines
    assert "dose.grid.width.x=0.1" in lines
    assert "dose.sampleAngleMotion=false" in lines
    assert not any(line.startswith("nvbb.") for line in lines)


def test_delivery_header_folds_registration(plan):
    plan = replace(plan, registration=RegistrationCorrection(roll=math.pi / 2, x=1.0, y=2.0, z=3.0))
    request = DoseJobRequest.from_plan(plan)

    lines = delivery_header_lines(request.timeline, request.sinogram, plan.scale, plan.registration)

    assert lines[:3] == ["event.00.tau=0.0", "event.00.type=gantryAngle", "event.00.value=100"]
    assert "event.01.value=-1" in lines            # jawFront unchanged
    assert "event.03.value=4" in lines             # isoX - x
    assert "event.04.value=9" in lines             # isoY + z
    assert "event.05.value=5" in lines             # isoZ - y
    assert "event.07.value=0.5" in lines           # isoZRate unchanged


def test_delivery_header_markers_and_leaf_counts(plan):
    request = DoseJobRequest.from_plan(plan)

    lines = delivery_header_lines(request.timeline, request.sinogram, plan.scale, plan.registration)

    assert "event.08.type=sync" in lines
    assert not any(line.startswith("event.08.value") for line in lines)
    assert "event.09.type=projWidth" in lines
    assert "event.09.value=1" in lines
    assert "event.12.tau=3.0" in lines
    assert "event.12.type=eop" in lines
    assert not any(line.startswith("event.12.value") for line in lines)

    counts = [line for line in lines if line.startswith("leaf.count.")]
    assert len(counts) == 64
    assert "leaf.count.00=0" in counts
    assert "leaf.count.10=3" in counts
    assert "leaf.count.11=3" in counts
    assert "leaf.count.12=0" in counts
    assert "leaf.count.63=0" in counts
    assert lines[-1] == "scale=1.5"


def test_stage_writes_all_inputs(tmp_path, plan, image, model_folder):
    options = DoseOptions(downsample=2, model_folder=str(model_folder))
    request = DoseJobRequest.from_plan(plan, image=image, options=options)
    stager = InputStager(temp_root=tmp_path)
    engine = RecordingEngine()

    staged = stager.stage(request, engine, downsample=2)

    names = sorted(p.name for p in staged.folder.iterdir())
    assert names == sorted([
        "ct.header", "ct_0.img", "dose.cfg", "plan.header", "plan.img",
        "dcom.header", "kernel.img", "lft.img",
    ])
    assert staged.folder.name.startswith("tomodose_")
    assert staged.dose_grid.shape == (2, 2, 3)
    assert staged.model_files == ["dcom.header", "kernel.img", "lft.img"]
    assert stager.model_copies == 1

    # Image inputs are mirrored before the plan files exist
    present, exclude = engine.mirrored[0]
    assert "plan.header" not in present and "plan.img" not in present
    assert set(PLAN_FILES) <= set(exclude)
    assert engine.pushed == [PLAN_FILES]

    stream = np.fromfile(str(staged.folder / "plan.img"), dtype="<f8")
    assert stream.size == 2 * 3 * 2
    np.testing.assert_allclose(stream[:6], [0.2, 0.8, 1.1, 1.9, 2.5, 2.5])


def test_voxel_grid_is_x_fastest(tmp_path, calibration):
    data = np.arange(48, dtype=np.uint16).reshape(2, 4, 6)
    image = ImageVolume(data, [0, 0, 0], [0.1, 0.1, 0.5], calibration)

    path = InputStager().write_voxel_grid(tmp_path, image)

    values = np.fromfile(str(path), dtype="<u2")
    np.testing.assert_array_equal(values, np.arange(48))
    assert path.stat().st_size == 48 * 2


def test_voxel_grid_out_of_range(tmp_path, calibration):
    data = np.full((1, 2, 2), -5, dtype=np.int16)
    image = ImageVolume(data, [0, 0, 0], [0.1, 0.1, 0.1], calibration, uid="NEG")

    with pytest.raises(StagingError, match="uint16"):
        InputStager().write_voxel_grid(tmp_path, image)


def test_registration_with_pitch_rejected_before_writing(tmp_path, plan, image, model_folder):
    plan = replace(plan, registration=RegistrationCorrection(pitch=0.01))
    request = DoseJobRequest.from_plan(plan, image=image, options=DoseOptions(model_folder=str(model_folder)))
    stager = InputStager(temp_root=tmp_path)

    with pytest.raises(UnsupportedRegistrationError, match="pitch"):
        stager.stage(request, RecordingEngine(), downsample=1)

    assert list(tmp_path.glob("tomodose_*")) == []
    assert stager.model_copies == 0


def test_registration_roll_and_shift_allowed():
    validate_registration(RegistrationCorrection(roll=0.1, x=1.0, y=-2.0, z=0.5))
    with pytest.raises(UnsupportedRegistrationError):
        validate_registration(RegistrationCorrection(yaw=-0.2))


def test_downsample_not_dividing_image_rejected(tmp_path, plan, image, model_folder):
    request = DoseJobRequest.from_plan(plan, image=image, options=DoseOptions(model_folder=str(model_folder)))
    stager = InputStager(temp_root=tmp_path)

    # nx = 6, ny = 4
    with pytest.raises(InvalidDownsampleError):
        stager.stage(request, RecordingEngine(), downsample=3)
    assert list(tmp_path.glob("tomodose_*")) == []


def test_missing_model_files(tmp_path, image):
    empty = tmp_path / "empty"
    empty.mkdir()

    with pytest.raises(StagingError, match="No beam model files"):
        InputStager(temp_root=tmp_path).stage_image(
            image, DoseOptions(model_folder=str(empty)), RecordingEngine(), downsample=1
        )


def test_voxel_grid_logs_density_range(tmp_path, calibration, caplog):
    data = np.array([[[0, 500], [1000, 2000]]], dtype=np.uint16)
    image = ImageVolume(data, [0, 0, 0], [0.1, 0.1, 0.1], calibration)

    with caplog.at_level(logging.INFO, logger="TomoDose.staging"):
        InputStager().write_voxel_grid(tmp_path, image)

    assert "Image density range 0.000 - 1.750 g/cc (Test)" in caplog.text


def test_registration_logged_only_when_applied(tmp_path, plan, caplog):
    request = DoseJobRequest.from_plan(plan)
    stager = InputStager()

    with caplog.at_level(logging.INFO, logger="TomoDose.staging"):
        stager.write_delivery_header(tmp_path, request.timeline, request.sinogram, 1.5, RegistrationCorrection())
    assert "registration adjustment" not in caplog.text

    with caplog.at_level(logging.INFO, logger="TomoDose.staging"):
        stager.write_delivery_header(tmp_path, request.timeline, request.sinogram, 1.5,
                                     RegistrationCorrection(x=1.0))
    assert "registration adjustment: roll 0 degrees, isocenter (1, 0, 0) cm" in caplog.text


def test_cleanup_removes_staging_folder(tmp_path, plan, image, model_folder):
    request = DoseJobRequest.from_plan(plan, image=image, options=DoseOptions(model_folder=str(model_folder)))
    stager = InputStager(temp_root=tmp_path)
    staged = stager.stage(request, RecordingEngine(), downsample=1)

    stager.cleanup(staged)
    assert not staged.folder.exists()

    # already removed
    stager.cleanup(staged)
