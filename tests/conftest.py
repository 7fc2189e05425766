"""Shared fixtures: an in-memory communicator and config factories."""

import asyncio
import logging
from pathlib import Path

import pytest
import structlog

from salt_provisioner.communicator import RemoteCmd, RetryPolicy
from salt_provisioner.config import ProvisioningConfig


class FakeCommunicator:
    """Records every call; commands succeed unless told otherwise.

    Args:
        exit_statuses: substring -> exit status for matching commands
        output: substring -> (stdout, stderr) bytes written for matching commands
        block_on: commands containing this substring never finish until disconnect
        connect_failures: number of connect attempts that fail with ConnectionRefusedError
    """

    def __init__(
        self,
        *,
        timeout: float = 5.0,
        connect_failures: int = 0,
        exit_statuses: dict[str, int] | None = None,
        output: dict[str, tuple[bytes, bytes]] | None = None,
        block_on: str | None = None,
    ):
        self._timeout = timeout
        self.connect_failures = connect_failures
        self.exit_statuses = exit_statuses or {}
        self.output = output or {}
        self.block_on = block_on
        self.calls: list[tuple] = []
        self.uploads: dict[str, bytes] = {}
        self.uploaded_sources: list[str] = []
        self.connected = False
        self.disconnect_count = 0
        self.blocked = asyncio.Event()
        self._pending: list[RemoteCmd] = []

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def commands(self) -> list[str]:
        return [call[1] for call in self.calls if call[0] == "start"]

    async def connect(self) -> None:
        self.calls.append(("connect",))
        if self.connect_failures > 0:
            self.connect_failures -= 1
            raise ConnectionRefusedError("sshd is not up yet")
        self.connected = True

    async def disconnect(self) -> None:
        self.calls.append(("disconnect",))
        self.disconnect_count += 1
        self.connected = False
        for cmd in self._pending:
            cmd.set_error(ConnectionResetError("communicator disconnected"))
        self._pending.clear()

    async def start(self, cmd: RemoteCmd) -> None:
        self._ensure_connected()
        self.calls.append(("start", cmd.command))

        if self.block_on and self.block_on in cmd.command:
            self._pending.append(cmd)
            self.blocked.set()
            return

        for pattern, (stdout, stderr) in self.output.items():
            if pattern in cmd.command:
                if cmd.stdout is not None:
                    cmd.stdout.write(stdout)
                if cmd.stderr is not None:
                    cmd.stderr.write(stderr)

        status = 0
        for pattern, code in self.exit_statuses.items():
            if pattern in cmd.command:
                status = code
        cmd.set_exit_status(status)

    async def upload(self, dst, data) -> None:
        self._ensure_connected()
        self.calls.append(("upload", dst))
        self.uploaded_sources.append(data.name)
        self.uploads[dst] = data.read()

    async def upload_dir(self, dst, src, exclude=()) -> None:
        self._ensure_connected()
        self.calls.append(("upload_dir", dst, src, tuple(exclude)))

    def _ensure_connected(self) -> None:
        if not self.connected:
            raise ConnectionError("not connected")


class ListSink:
    def __init__(self):
        self.lines: list[str] = []

    def output(self, line: str) -> None:
        self.lines.append(line)


@pytest.fixture
def fake_comm():
    return FakeCommunicator()


@pytest.fixture
def sink():
    return ListSink()


@pytest.fixture
def fast_retry():
    return RetryPolicy(initial_delay=0.01, max_delay=0.01)


@pytest.fixture
def state_tree(tmp_path: Path) -> Path:
    path = tmp_path / "salt"
    path.mkdir()
    (path / "top.sls").write_text("base:\n  '*':\n    - webserver\n")
    return path


@pytest.fixture
def pillar_roots(tmp_path: Path) -> Path:
    path = tmp_path / "pillar"
    path.mkdir()
    (path / "top.sls").write_text("base:\n  '*':\n    - data\n")
    return path


@pytest.fixture
def tfvars(tmp_path: Path) -> Path:
    path = tmp_path / "terraform.tfvars"
    path.write_text('region = "eu-west-1"\nrole = "web"\n')
    return path


@pytest.fixture
def make_config(state_tree: Path, tfvars: Path):
    def _make(**overrides) -> ProvisioningConfig:
        data = {"local_state_tree": state_tree, "tfvars": tfvars, **overrides}
        return ProvisioningConfig.model_validate(data)

    return _make


@pytest.fixture
def make_comm():
    def _make(**kwargs) -> FakeCommunicator:
        return FakeCommunicator(**kwargs)

    return _make


@pytest.fixture
def reset_logging():
    """Reset logging configuration around a test."""
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
