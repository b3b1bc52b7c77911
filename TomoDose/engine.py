"""
Dose engine discovery and dispatch.

The engine is either installed locally (gpusadose / sadose on the PATH) or
reached on a remote computation server over SSH. Both are driven through
the same small interface:

- mirror(local_dir, exclude): make staged inputs available to the engine
- push(local_dir, names): refresh individual staged files
- run(staged_dir, options): execute and report (output, result_path, ok)

EngineGateway looks for an engine once and keeps the resulting EngineHandle (and any
remote session) until rediscover() or close() is called.
"""

import logging
import posixpath
import re
import shlex
import shutil
import subprocess
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Optional

import paramiko
from pydicom.uid import generate_uid

from .config import EngineConfig
from .errors import EngineUnavailableError, ExternalEngineError, StagingError

logger = logging.getLogger(__name__)

CONFIG_FILE = "dose.cfg"
RESULT_FILE = "dose.img"
REMOTE_LOG_FILE = "out.txt"

_ERROR_MARKER = re.compile("ERROR", re.IGNORECASE)


def output_has_error(output: str) -> bool:
    """True when the engine output contains the ERROR marker (any case)."""
    return _ERROR_MARKER.search(output or "") is not None


class EngineKind(Enum):
    NONE = "none"
    LOCAL = "local"
    REMOTE = "remote"


@dataclass
class EngineResult:
    output: str
    result_path: Optional[Path]
    ok: bool


class GpuDevice:
    """
    Exclusive access to the GPU around one engine run.

    On entry the device lock is acquired and, when configured, the reset
    command is executed; the lock is released on exit.
    """

    def __init__(self, reset_command: Optional[str] = None, runner=subprocess.run):
        self.reset_command = reset_command
        self._runner = runner
        self._lock = threading.Lock()
        self._warned_no_reset = False

    def __enter__(self):
        self._lock.acquire()
        if not self.reset_command:
            if not self._warned_no_reset:
                logger.warning(
                    "No GPU_RESET_COMMAND configured; the GPU is not reset before dose calculations"
                )
                self._warned_no_reset = True
        else:
            logger.info("Resetting GPU device: %s", self.reset_command)
            try:
                proc = self._runner(
                    shlex.split(self.reset_command),
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    errors="replace",
                )
            except OSError as err:
                self._lock.release()
                raise ExternalEngineError(f"GPU reset command failed to start: {err}") from err
            if proc.returncode != 0:
                self._lock.release()
                raise ExternalEngineError(
                    f"GPU reset command exited with status {proc.returncode}", output=proc.stdout or ""
                )
        return self

    def __exit__(self, exc_type, exc, tb):
        self._lock.release()
        return False

    @property
    def busy(self) -> bool:
        return self._lock.locked()


class Engine:
    """Common interface of the local and remote engines."""

    kind = EngineKind.NONE

    def executable(self, use_secondary_engine: bool) -> str:
        raise NotImplementedError

    def mirror(self, local_dir: Path, exclude: Iterable[str] = ()) -> None:
        """Make a freshly staged directory available to the engine."""

    def push(self, local_dir: Path, names: Iterable[str]) -> None:
        """Refresh the given staged files."""

    def run(self, staged_dir: Path, options) -> EngineResult:
        raise NotImplementedError

    def discard(self) -> None:
        """Remove the engine-side copy of the last mirrored directory."""

    def close(self) -> None:
        pass


class LocalEngine(Engine):
    """Engine executables installed on this machine."""

    kind = EngineKind.LOCAL

    def __init__(self, executables: Dict[str, Optional[str]], runner=subprocess.run,
                 device: Optional[GpuDevice] = None, timeout: Optional[float] = None):
        self.executables = dict(executables)
        self._runner = runner
        self.device = device or GpuDevice(runner=runner)
        self.timeout = timeout

    def executable(self, use_secondary_engine: bool) -> str:
        variant = "cpu" if use_secondary_engine else "gpu"
        exe = self.executables.get(variant)
        if not exe:
            raise EngineUnavailableError(
                f"The {variant.upper()} dose engine is not installed locally "
                f"(available: {[k for k, v in self.executables.items() if v]})"
            )
        return exe

    def _call(self, cmd, cwd):
        try:
            return self._runner(
                cmd,
                cwd=str(cwd),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as err:
            output = err.output or ""
            if isinstance(output, bytes):
                output = output.decode(errors="replace")
            raise ExternalEngineError(
                f"{cmd[0]} did not finish within {self.timeout:g} s", output=output
            ) from err
        except OSError as err:
            raise ExternalEngineError(f"Failed to start {cmd[0]}: {err}") from err

    def run(self, staged_dir: Path, options) -> EngineResult:
        staged_dir = Path(staged_dir)
        exe = self.executable(options.use_secondary_engine)
        cmd = [exe, "-C", CONFIG_FILE]
        logger.info("Executing %s -C %s", exe, staged_dir / CONFIG_FILE)

        if options.use_secondary_engine:
            proc = self._call(cmd, staged_dir)
        else:
            with self.device:
                proc = self._call(cmd, staged_dir)

        output = proc.stdout or ""
        ok = proc.returncode == 0 and not output_has_error(output)
        if ok:
            logger.info(output.strip())
        else:
            logger.error("Dose engine failed (exit status %s):\n%s", proc.returncode, output)
        return EngineResult(output=output, result_path=staged_dir / RESULT_FILE if ok else None, ok=ok)


class RemoteEngine(Engine):
    """Engine executed on a remote computation server through one SSH session."""

    kind = EngineKind.REMOTE

    def __init__(self, client, config: EngineConfig, poll_interval: float = 0.5):
        self.client = client
        self.config = config
        self.poll_interval = poll_interval
        self.remote_folder: Optional[str] = None

    def executable(self, use_secondary_engine: bool) -> str:
        return self.config.cpu_executable if use_secondary_engine else self.config.gpu_executable

    def execute(self, command: str, timeout: Optional[float] = None):
        """Run a shell command remotely; returns (exit_status, output)."""
        logger.debug("Remote command: %s", command)
        _, stdout, _ = self.client.exec_command(command)
        channel = stdout.channel
        deadline = None if timeout is None else time.monotonic() + timeout
        while not channel.exit_status_ready():
            if deadline is not None and time.monotonic() > deadline:
                channel.close()
                raise ExternalEngineError(f"Remote command did not finish within {timeout:g} s: {command}")
            time.sleep(self.poll_interval)
        status = channel.recv_exit_status()
        output = stdout.read().decode(errors="replace")
        return status, output

    def mirror(self, local_dir: Path, exclude: Iterable[str] = ()) -> None:
        local_dir = Path(local_dir)
        exclude = set(exclude)
        self.remote_folder = posixpath.join(
            self.config.remote_root, generate_uid().replace(".", "_")
        )
        logger.info("Creating remote directory %s", self.remote_folder)
        try:
            status, output = self.execute(f"mkdir -p {shlex.quote(self.remote_folder)}", timeout=60)
        except (paramiko.SSHException, OSError, ExternalEngineError) as err:
            raise StagingError(f"Failed to create remote directory {self.remote_folder}: {err}") from err
        if status != 0:
            raise StagingError(f"Failed to create remote directory {self.remote_folder}: {output}")

        names = sorted(p.name for p in local_dir.iterdir() if p.is_file() and p.name not in exclude)
        self.push(local_dir, names)

    def push(self, local_dir: Path, names: Iterable[str]) -> None:
        if self.remote_folder is None:
            raise StagingError("Remote directory has not been created; stage the image first")
        try:
            with self.client.open_sftp() as sftp:
                for name in names:
                    logger.info("Secure copying file %s", name)
                    sftp.put(str(Path(local_dir) / name), posixpath.join(self.remote_folder, name))
        except (paramiko.SSHException, OSError) as err:
            raise StagingError(f"Failed to copy inputs to {self.config.server}:{self.remote_folder}: {err}") from err

    def _fetch(self, name: str, local_dir: Path) -> Path:
        target = Path(local_dir) / name
        with self.client.open_sftp() as sftp:
            sftp.get(posixpath.join(self.remote_folder, name), str(target))
        return target

    def run(self, staged_dir: Path, options) -> EngineResult:
        if self.remote_folder is None:
            raise StagingError("Remote directory has not been created; stage the image first")
        exe = self.executable(options.use_secondary_engine)
        logger.info("Executing %s on remote server", exe)
        command = (
            f"cd {shlex.quote(self.remote_folder)}; "
            f"{exe} -C {CONFIG_FILE} > {REMOTE_LOG_FILE} 2>&1"
        )
        try:
            status, _ = self.execute(command, timeout=self.config.timeout)
            log_path = self._fetch(REMOTE_LOG_FILE, staged_dir)
        except (paramiko.SSHException, OSError) as err:
            raise ExternalEngineError(f"Remote dose calculation failed: {err}") from err

        output = log_path.read_text(errors="replace")
        if status != 0:
            logger.warning("Remote engine exited with status %d", status)
        if output_has_error(output):
            logger.error("Dose engine failed:\n%s", output)
            return EngineResult(output=output, result_path=None, ok=False)

        logger.info(output.strip())
        logger.info("Retrieving calculated dose image from remote directory")
        try:
            result_path = self._fetch(RESULT_FILE, staged_dir)
        except (paramiko.SSHException, OSError) as err:
            raise ExternalEngineError(
                f"Dose image could not be retrieved from {self.remote_folder}: {err}", output=output
            ) from err
        return EngineResult(output=output, result_path=result_path, ok=True)

    def discard(self) -> None:
        if self.remote_folder is None:
            return
        folder, self.remote_folder = self.remote_folder, None
        logger.info("Removing remote directory %s", folder)
        try:
            status, output = self.execute(f"rm -rf {shlex.quote(folder)}", timeout=60)
        except (paramiko.SSHException, OSError, ExternalEngineError) as err:
            logger.warning("Could not remove remote directory %s: %s", folder, err)
            return
        if status != 0:
            logger.warning("Could not remove remote directory %s: %s", folder, output.strip())

    def close(self) -> None:
        self.client.close()


@dataclass
class EngineHandle:
    kind: EngineKind
    engine: Optional[Engine] = None

    @property
    def available(self) -> bool:
        return self.kind is not EngineKind.NONE


class EngineGateway:
    """
    Discovers the dose engine once and dispatches jobs to it.

    Parameters
    ----------
    config : EngineConfig, optional
        Remote connection parameters and executable names
    which : callable
        Executable lookup, shutil.which by default
    runner : callable
        subprocess.run compatible callable used for local processes
    ssh_client_factory : callable
        Returns an unconnected paramiko.SSHClient compatible object
    """

    def __init__(self, config: Optional[EngineConfig] = None, which=shutil.which,
                 runner=subprocess.run, ssh_client_factory=paramiko.SSHClient):
        self.config = config or EngineConfig()
        self._which = which
        self._runner = runner
        self._ssh_client_factory = ssh_client_factory
        self._handle: Optional[EngineHandle] = None
        self.discovery_count = 0

    def discover(self) -> EngineHandle:
        if self._handle is None:
            self._handle = self._discover()
        return self._handle

    def rediscover(self) -> EngineHandle:
        self.close()
        return self.discover()

    def run(self, handle: EngineHandle, staged_dir: Path, options) -> EngineResult:
        if not handle.available:
            raise EngineUnavailableError(
                "Neither a local nor remote calculation engine could be established. "
                "Dose calculation is not possible."
            )
        return handle.engine.run(Path(staged_dir), options)

    def close(self) -> None:
        if self._handle is not None and self._handle.engine is not None:
            self._handle.engine.close()
        self._handle = None

    def _discover(self) -> EngineHandle:
        self.discovery_count += 1

        executables = {
            "gpu": self._which(self.config.gpu_executable),
            "cpu": self._which(self.config.cpu_executable),
        }
        if any(executables.values()):
            for exe in executables.values():
                if exe:
                    logger.info("Found %s at %s", self._engine_version(exe), exe)
            device = GpuDevice(self.config.gpu_reset_command, runner=self._runner)
            return EngineHandle(
                EngineKind.LOCAL,
                LocalEngine(executables, runner=self._runner, device=device, timeout=self.config.timeout),
            )

        logger.info("Checking for remote computation server")
        if not self.config.has_remote:
            logger.warning("No local dose engine found and no remote server configured")
            return EngineHandle(EngineKind.NONE)

        client = None
        try:
            logger.info("Connecting to %s via SSH", self.config.server)
            client = self._ssh_client_factory()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            client.connect(
                self.config.server,
                port=self.config.port,
                username=self.config.user,
                password=self.config.password,
                timeout=self.config.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
            engine = RemoteEngine(client, self.config)
            engine.execute("ls", timeout=self.config.connect_timeout)
        except (paramiko.SSHException, OSError, ExternalEngineError) as err:
            logger.warning("Remote computation server %s unavailable: %s", self.config.server, err)
            if client is not None:
                client.close()
            return EngineHandle(EngineKind.NONE)

        logger.info("SSH connection successfully established")
        return EngineHandle(EngineKind.REMOTE, engine)

    def _engine_version(self, exe: str) -> str:
        try:
            proc = self._runner([exe, "-V"], stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                                text=True, errors="replace", timeout=30)
        except (OSError, subprocess.SubprocessError) as err:
            logger.debug("Could not query %s version: %s", exe, err)
            return Path(exe).name
        lines = (proc.stdout or "").strip().splitlines()
        return lines[0] if lines else Path(exe).name
