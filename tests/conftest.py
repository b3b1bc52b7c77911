"""
Shared fixtures: a small planning image, a two-leaf delivery plan and
stand-ins for the dose engine process and the SSH server.
"""

import os
import subprocess
import sys
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from TomoDose.ct_calibration import DensityCalibration
from TomoDose.plan import ImageVolume, PlanRecord, RawActions, RegistrationCorrection


# Projection-major (open, close) pairs for 2 leaves x 3 projections.
# Full sinogram rows: leaf 10 = [0.6, 0.8, 0.0], leaf 11 = [0.5, 0.0, 0.5]
PAIRS_2x3 = [
    0.2, 0.8,   0.0, 0.5,
    1.1, 1.9,   1.0, 1.0,
    2.5, 2.5,   2.25, 2.75,
]


def write_blob(path, values, byteorder="<"):
    np.asarray(values, dtype=byteorder + "f8").tofile(str(path))
    return Path(path)


def _read_cfg(path):
    cfg = {}
    for line in Path(path).read_text().splitlines():
        key, value = line.split("=", 1)
        cfg[key] = value
    return cfg


def grid_values(folder):
    """Number of dose voxels the engine would write for a staged folder."""
    cfg = _read_cfg(Path(folder) / "dose.cfg")
    ct = _read_cfg(Path(folder) / "ct.header")
    return int(cfg["dose.grid.dim.x"]) * int(cfg["dose.grid.dim.y"]) * int(ct["cs.dim.z"])


class FakeEngineRunner:
    """
    subprocess.run replacement that behaves like gpusadose / sadose.

    ``-V`` prints a version line. ``-C dose.cfg`` writes dose.img into the
    working directory (arange over the dose grid) and prints ``output``.
    """

    def __init__(self, output="Dose calculation finished\n", returncode=0, write_result=True):
        self.output = output
        self.returncode = returncode
        self.write_result = write_result
        self.calls = []

    @property
    def runs(self):
        return [c for c in self.calls if "-C" in c[0]]

    def __call__(self, cmd, cwd=None, **kwargs):
        self.calls.append((list(cmd), cwd))
        if "-V" in cmd:
            return subprocess.CompletedProcess(cmd, 0, stdout=f"{Path(cmd[0]).name} 3.1.0\n")
        if "-C" in cmd:
            assert (Path(cwd) / cmd[cmd.index("-C") + 1]).is_file()
            if self.write_result:
                n = grid_values(cwd)
                np.arange(n, dtype="<f4").tofile(str(Path(cwd) / "dose.img"))
            return subprocess.CompletedProcess(cmd, self.returncode, stdout=self.output)
        return subprocess.CompletedProcess(cmd, 0, stdout="")


class FakeChannel:
    def __init__(self, status):
        self.status = status
        self.closed = False

    def exit_status_ready(self):
        return True

    def recv_exit_status(self):
        return self.status

    def close(self):
        self.closed = True


class FakeStdout:
    def __init__(self, status, text=""):
        self.channel = FakeChannel(status)
        self._text = text

    def read(self):
        return self._text.encode()


class FakeSFTP:
    def __init__(self, files):
        self.files = files

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def put(self, local, remote):
        self.files[remote] = Path(local).read_bytes()

    def get(self, remote, local):
        if remote not in self.files:
            raise IOError(f"No such file: {remote}")
        Path(local).write_bytes(self.files[remote])


class FakeSSHClient:
    """
    paramiko.SSHClient stand-in holding the remote file system in a dict.

    Running the engine produces out.txt with ``engine_output`` and, when the
    output has no error, dose.img sized from the uploaded dose.cfg.
    """

    def __init__(self, engine_output="Dose calculation finished\n", connect_error=None):
        self.engine_output = engine_output
        self.connect_error = connect_error
        self.files = {}
        self.commands = []
        self.connected_with = None
        self.policy = None
        self.closed = False

    def set_missing_host_key_policy(self, policy):
        self.policy = policy

    def connect(self, hostname, **kwargs):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected_with = (hostname, kwargs)

    def exec_command(self, command):
        self.commands.append(command)
        if " -C dose.cfg" in command:
            folder = command.split(";")[0].replace("cd ", "").strip()
            self.files[f"{folder}/out.txt"] = self.engine_output.encode()
            if "error" not in self.engine_output.lower():
                cfg = dict(
                    line.split("=", 1) for line in self.files[f"{folder}/dose.cfg"].decode().splitlines()
                )
                ct = dict(
                    line.split("=", 1) for line in self.files[f"{folder}/ct.header"].decode().splitlines()
                )
                n = int(cfg["dose.grid.dim.x"]) * int(cfg["dose.grid.dim.y"]) * int(ct["cs.dim.z"])
                self.files[f"{folder}/dose.img"] = np.arange(n, dtype="<f4").tobytes()
        return None, FakeStdout(0, "ok\n"), None

    def open_sftp(self):
        return FakeSFTP(self.files)

    def close(self):
        self.closed = True


@pytest.fixture
def calibration():
    return DensityCalibration("Test", [0, 1000, 3000], [0.0, 1.0, 2.5])


@pytest.fixture
def image(calibration):
    # nx=6, ny=4, nz=2
    data = np.full((2, 4, 6), 1000, dtype=np.uint16)
    return ImageVolume(data, [0.0, 0.0, 0.0], [0.1, 0.1, 0.5], calibration, uid="CT1")


@pytest.fixture
def model_folder(tmp_path):
    folder = tmp_path / "GPU"
    folder.mkdir()
    for name in ("dcom.header", "kernel.img", "lft.img"):
        (folder / name).write_bytes(b"\x00" * 8)
    return folder


@pytest.fixture
def actions():
    return RawActions(
        gantry_angle=10.0,
        jaw_front=-1.0,
        jaw_back=1.0,
        iso_x=5.0,
        iso_y=6.0,
        iso_z=7.0,
        gantry_velocities=[(0.0, 6.0)],
        jaw_velocities=[(1.0, 0.1, 0.2)],
        isocenter_velocities=[(0.0, 0.5)],
    )


@pytest.fixture
def plan(tmp_path, actions):
    blob = write_blob(tmp_path / "sinogram.bin", PAIRS_2x3)
    return PlanRecord(
        scale=1.5,
        total_tau=3.0,
        lower_leaf_index=10,
        number_of_projections=3,
        number_of_leaves=2,
        sinogram_path=blob,
        actions=actions,
        registration=RegistrationCorrection(),
        plan_uid="1.2.3",
        label="Helical 1",
    )


@pytest.fixture
def engine_runner():
    return FakeEngineRunner()


@pytest.fixture
def local_which():
    def which(name):
        return f"/opt/tomo/bin/{name}" if name in ("gpusadose", "sadose") else None
    return which


@pytest.fixture
def ssh_client():
    return FakeSSHClient()


@pytest.fixture
def pairs():
    return list(PAIRS_2x3)


@pytest.fixture
def blob_writer():
    return write_blob


@pytest.fixture
def engine_runner_factory():
    return FakeEngineRunner
