"""
Dose calculation jobs.

A job runs through Idle -> Validating -> Staging -> Dispatching and ends in
Succeeded or Failed. Engine discovery and the last staged image live in an
EngineContext that the caller constructs and passes to the orchestrator, so
a plan can be recalculated on the same image without restaging the image
or rediscovering the engine.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .config import DoseOptions
from .engine import Engine, EngineGateway
from .errors import EngineUnavailableError, ExternalEngineError, TomoDoseError, ValidationError
from .grid_utils import read_dose_result, upsample_slices
from .plan import DoseVolume, ImageVolume, PlanRecord
from .sinogram import LeafSinogram, decode
from .staging import InputStager, StagedInputs
from .timeline import EventTimeline, build_timeline

logger = logging.getLogger(__name__)


class JobState(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    STAGING = "staging"
    DISPATCHING = "dispatching"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class DoseJobRequest:
    """
    One dose calculation.

    ``image`` may be None to recalculate on the image staged by the previous
    job; ``options`` may be None to keep the previous job's options.
    """
    plan: PlanRecord
    timeline: EventTimeline
    sinogram: LeafSinogram
    image: Optional[ImageVolume] = None
    options: Optional[DoseOptions] = None

    @classmethod
    def from_plan(cls, plan: PlanRecord, image: Optional[ImageVolume] = None,
                  options: Optional[DoseOptions] = None, byteorder: str = "<",
                  out_of_range: str = "reject") -> "DoseJobRequest":
        """Decode the plan's leaf sinogram and build its event timeline."""
        sinogram, _ = decode(
            plan.sinogram_path,
            plan.number_of_leaves,
            plan.number_of_projections,
            plan.lower_leaf_index,
            byteorder=byteorder,
            out_of_range=out_of_range,
        )
        timeline = build_timeline(plan.actions, plan.total_tau)
        return cls(plan=plan, timeline=timeline, sinogram=sinogram, image=image, options=options)

    @property
    def label(self) -> str:
        image = self.image.uid if self.image is not None else "<staged image>"
        return f"plan={self.plan.identifier}, image={image}"


class EngineContext:
    """
    Engine state shared by consecutive jobs.

    Holds the gateway (discovered engine and remote session) and the inputs
    staged for the last image.
    """

    def __init__(self, gateway: Optional[EngineGateway] = None, stager: Optional[InputStager] = None):
        self.gateway = gateway or EngineGateway()
        self.stager = stager or InputStager()
        self.staged: Optional[StagedInputs] = None
        self._staged_engine: Optional[Engine] = None

    def needs_image_staging(self, image: ImageVolume, options: DoseOptions,
                            downsample: int, engine: Engine) -> bool:
        staged = self.staged
        return (
            staged is None
            or staged.image is not image
            or staged.options != options
            or staged.downsample != downsample
            or self._staged_engine is not engine
        )

    def stage_image(self, image: ImageVolume, options: DoseOptions, downsample: int,
                    engine: Engine) -> StagedInputs:
        self._discard_staged()
        self.staged = self.stager.stage_image(image, options, engine, downsample)
        self._staged_engine = engine
        return self.staged

    def reset(self) -> None:
        """Remove the staged inputs and close the engine session."""
        self._discard_staged()
        self.gateway.close()

    def _discard_staged(self) -> None:
        if self._staged_engine is not None:
            self._staged_engine.discard()
        if self.staged is not None:
            self.stager.cleanup(self.staged)
        self.staged = None
        self._staged_engine = None


def check_engine(context: EngineContext, refresh: bool = False) -> bool:
    """Return True when a local or remote dose engine is available."""
    handle = context.gateway.rediscover() if refresh else context.gateway.discover()
    return handle.available


class DoseJobOrchestrator:
    """Runs dose calculation jobs one at a time against an EngineContext."""

    def __init__(self, context: Optional[EngineContext] = None):
        self.context = context or EngineContext()
        self.state = JobState.IDLE
        self.last_output = ""

    def calculate(self, request: DoseJobRequest) -> DoseVolume:
        """
        Calculate dose for a request.

        Returns
        -------
        DoseVolume
            Dose on the native image grid

        Raises
        ------
        TomoDoseError
            ValidationError, EngineUnavailableError, StagingError,
            ExternalEngineError (with the engine output verbatim) or
            BinaryFormatError; tagged with the job's plan and image.
        """
        t0 = time.perf_counter()
        ctx = self.context
        self.last_output = ""
        try:
            self.state = JobState.VALIDATING
            handle = ctx.gateway.discover()
            if not handle.available:
                raise EngineUnavailableError(
                    "Neither a local nor remote calculation engine could be established. "
                    "Dose calculation is not possible."
                )

            image = request.image
            options = request.options
            if ctx.staged is not None:
                image = image or ctx.staged.image
                options = options or ctx.staged.options
            options = options or DoseOptions()
            if image is None:
                raise ValidationError("No image was provided and no image has been staged")

            downsample = options.resolve_downsample(image.n_voxels)
            ctx.stager.validate(request, image, downsample)
            logger.info("Beginning dose calculation using downsampling factor of %i", downsample)

            self.state = JobState.STAGING
            if ctx.needs_image_staging(image, options, downsample, handle.engine):
                staged = ctx.stage_image(image, options, downsample, handle.engine)
            else:
                staged = ctx.staged
                logger.info("Reusing image inputs staged in %s", staged.folder)
            ctx.stager.stage_plan(request, staged, handle.engine)

            self.state = JobState.DISPATCHING
            result = ctx.gateway.run(handle, staged.folder, options)
            self.last_output = result.output
            if not result.ok:
                raise ExternalEngineError(result.output, output=result.output)

            dose = self._load_dose(result.result_path, staged)
        except TomoDoseError as err:
            self.state = JobState.FAILED
            err.with_job(request.label)
            logger.error("Dose calculation failed: %s", err)
            raise
        except Exception:
            self.state = JobState.FAILED
            logger.exception("Dose calculation failed [job: %s]", request.label)
            raise

        self.state = JobState.SUCCEEDED
        logger.info("Dose calculation completed in %0.3f seconds", time.perf_counter() - t0)
        return dose

    def _load_dose(self, result_path, staged: StagedInputs) -> DoseVolume:
        image = staged.image
        logger.info("Reading dose image from %s", result_path)
        low = read_dose_result(result_path, staged.dose_grid)

        if staged.downsample > 1:
            logger.info(
                "Upsampling calculated dose image by %i using nearest neighbor interpolation",
                staged.downsample
            )
            data = upsample_slices(low, staged.downsample, image.data.shape)
        else:
            data = low

        return DoseVolume(data, image.start, image.width, image.dimensions)
