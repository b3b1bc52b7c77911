from .plan import ImageVolume, DoseVolume, PlanRecord, RawActions, RegistrationCorrection, load_plan_record
from .ct_calibration import DensityCalibration
from .config import DoseOptions, EngineConfig, load_engine_config
from .sinogram import LeafSinogram, ActiveWindow, decode
from .timeline import EventKind, EventTimeline, TimelineEvent, UNSET, build_timeline
from .engine import EngineGateway, EngineHandle, EngineKind, LocalEngine, RemoteEngine, GpuDevice
from .staging import InputStager, StagedInputs
from .calc_dose import DoseJobOrchestrator, DoseJobRequest, EngineContext, JobState, check_engine
from . import errors

__all__ = [
    'ImageVolume', 'DoseVolume', 'PlanRecord', 'RawActions', 'RegistrationCorrection', 'load_plan_record',
    'DensityCalibration', 'DoseOptions', 'EngineConfig', 'load_engine_config',
    'LeafSinogram', 'ActiveWindow', 'decode',
    'EventKind', 'EventTimeline', 'TimelineEvent', 'UNSET', 'build_timeline',
    'EngineGateway', 'EngineHandle', 'EngineKind', 'LocalEngine', 'RemoteEngine', 'GpuDevice',
    'InputStager', 'StagedInputs',
    'DoseJobOrchestrator', 'DoseJobRequest', 'EngineContext', 'JobState', 'check_engine',
    'errors'
]
