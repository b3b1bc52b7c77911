"""
Engine connection settings and dose calculation options.

Remote engine parameters are read from a configuration file, either the
plain ``config.txt`` format::

    REMOTE_CALC_SERVER = tomo-research
    REMOTE_CALC_USER = username
    REMOTE_CALC_PASS = password

or YAML / JSON with the same keys (case-insensitive).
"""

import json
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

# Images with at least this many voxels are calculated at half resolution
# when downsample is left on automatic (0)
AUTO_DOWNSAMPLE_VOXELS = 4e7


@dataclass
class EngineConfig:
    """Where and how the dose engine is found and run."""
    server: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    port: int = 22
    remote_root: str = "/tmp"
    gpu_executable: str = "gpusadose"
    cpu_executable: str = "sadose"
    timeout: Optional[float] = 4 * 3600.0  # seconds, local and remote
    gpu_reset_command: Optional[str] = None  # e.g. "nvidia-smi --gpu-reset -i 0"
    connect_timeout: float = 30.0

    @property
    def has_remote(self) -> bool:
        return bool(self.server and self.user and self.password is not None)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "EngineConfig":
        keys = {str(k).strip().upper(): v for k, v in (d or {}).items()}

        def _get(*names, default=None):
            for name in names:
                if name in keys and keys[name] not in (None, ""):
                    return keys[name]
            return default

        timeout = _get("ENGINE_TIMEOUT", "TIMEOUT", default=cls.timeout)
        return cls(
            server=_get("REMOTE_CALC_SERVER", "SERVER"),
            user=_get("REMOTE_CALC_USER", "USER"),
            password=_get("REMOTE_CALC_PASS", "PASSWORD"),
            port=int(_get("REMOTE_CALC_PORT", "PORT", default=22)),
            remote_root=str(_get("REMOTE_CALC_ROOT", "REMOTE_ROOT", default="/tmp")),
            gpu_executable=str(_get("GPU_EXECUTABLE", default="gpusadose")),
            cpu_executable=str(_get("CPU_EXECUTABLE", default="sadose")),
            timeout=None if timeout is None else float(timeout),
            gpu_reset_command=_get("GPU_RESET_COMMAND"),
        )


def _parse_key_value(text: str) -> Dict[str, str]:
    config = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        config[key.strip()] = value.strip()
    return config


def load_engine_config(path) -> EngineConfig:
    """
    Load engine settings from config.txt, YAML or JSON.

    A missing file is not an error: the engine may still be found locally.
    """
    path = Path(path)
    if not path.is_file():
        logger.warning(
            "The config file %s could not be opened; remote calculation is disabled", path
        )
        return EngineConfig()

    with open(path, "r", encoding="utf-8") as f:
        if path.suffix.lower() in {".yaml", ".yml"}:
            raw = yaml.safe_load(f) or {}
        elif path.suffix.lower() == ".json":
            raw = json.load(f)
        else:
            raw = _parse_key_value(f.read())

    config = EngineConfig.from_dict(raw)
    logger.info("Loaded %s parameters", path.name)
    if not config.has_remote:
        logger.warning("The remote calculation options were not present in %s", path)
    return config


@dataclass(frozen=True)
class DoseOptions:
    """
    Dose calculation options.

    Attributes
    ----------
    downsample : int
        Transverse downsampling factor; 0 selects automatically from the
        image size (see resolve_downsample)
    azimuths : int
        Azimuthal angles per zenith angle
    ray_steps : int
        Fluence ray rate / step count
    super_sample : bool
        Sample gantry motion within each projection
    use_secondary_engine : bool
        Use the CPU engine (sadose) instead of the GPU engine (gpusadose)
    model_folder : str
        Directory holding the beam model files (dcom.header, kernel.img, ...)
    """
    downsample: int = 0
    azimuths: int = 4
    ray_steps: int = 1
    super_sample: bool = False
    use_secondary_engine: bool = False
    model_folder: str = "./GPU"

    def __post_init__(self):
        if self.downsample < 0:
            raise ValueError(f"downsample must be >= 0, got {self.downsample}")
        if self.azimuths < 1 or self.ray_steps < 1:
            raise ValueError("azimuths and ray_steps must be >= 1")

    def with_overrides(self, **kwargs) -> "DoseOptions":
        return replace(self, **{k: v for k, v in kwargs.items() if v is not None})

    def resolve_downsample(self, n_voxels: int) -> int:
        if self.downsample:
            return int(self.downsample)
        return 2 if n_voxels >= AUTO_DOWNSAMPLE_VOXELS else 1
