"""Provisioning orchestrator.

Sequences the remote operations of one apply:

    connecting -> bootstrapping? -> staging_grains? -> staging_minion_config?
        -> staging_state_tree -> staging_pillar_roots? -> executing -> done

Stages run strictly one after another and the pipeline is fail-fast: the first
failing step ends the apply, nothing already staged is rolled back and only the
initial connect is retried. A watcher task owns the disconnect; it fires when
the pipeline ends or when the caller's cancel event is set, whichever comes
first, and is joined before ``apply`` returns.
"""

import asyncio
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
import posixpath
from typing import Any
import uuid

from pydantic import BaseModel
import structlog

from .command import build_command
from .communicator import Communicator, RetryPolicy, connect_with_retry
from .config import (
    REMOTE_GRAINS_FILE,
    REMOTE_MINION_CONFIG_FILE,
    REMOTE_SALT_CONFIG_DIR,
    ProvisioningConfig,
)
from .errors import (
    BootstrapError,
    ProvisioningCancelledError,
    ProvisioningError,
    RemoteCommandError,
    StagingError,
)
from .grains import staged_grains_file
from .output import LoggingSink, ProgressSink
from .remote import DEFAULT_UPLOAD_EXCLUDES, RemoteOperations

logger = structlog.get_logger(__name__)

BOOTSTRAP_SCRIPT_PATH = "/tmp/install_salt.sh"


class Stage(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    BOOTSTRAPPING = "bootstrapping"
    STAGING_GRAINS = "staging_grains"
    STAGING_MINION_CONFIG = "staging_minion_config"
    STAGING_STATE_TREE = "staging_state_tree"
    STAGING_PILLAR_ROOTS = "staging_pillar_roots"
    EXECUTING = "executing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ProvisioningRequest:
    """Everything one apply needs besides the communicator."""

    config: ProvisioningConfig
    provider_state: Mapping[str, Any] | BaseModel | None = None
    sink: ProgressSink = field(default_factory=LoggingSink)


@contextmanager
def staging_errors(message: str, path: str) -> Iterator[None]:
    """Wrap command and transport failures of a staging step in ``StagingError``."""
    try:
        yield
    except (RemoteCommandError, OSError) as e:
        raise StagingError(f"{message}: {e}", path=path) from e


class Provisioner:
    """Runs one apply against a single machine."""

    def __init__(
        self,
        request: ProvisioningRequest,
        comm: Communicator,
        *,
        retry_policy: RetryPolicy | None = None,
        connect_timeout: float | None = None,
    ):
        self.request = request
        self.config = request.config
        self.sink = request.sink
        self.comm = comm
        self.retry_policy = retry_policy or RetryPolicy()
        self.connect_timeout = connect_timeout
        self.command = build_command(self.config)
        self.ops = RemoteOperations(
            comm,
            self.sink,
            disable_sudo=self.config.disable_sudo,
            sudo_password=self.config.sudo_password.get_secret_value(),
        )
        self.stage = Stage.IDLE
        self.stages: list[Stage] = []
        self._connected = False
        self._disconnected = False

    def _enter(self, stage: Stage) -> None:
        self.stage = stage
        self.stages.append(stage)
        logger.info("stage_entered", stage=stage.value)

    async def apply(self, cancel_event: asyncio.Event | None = None) -> None:
        """Provision the machine.

        Args:
            cancel_event: Setting it disconnects the communicator and aborts the
                apply with ``ProvisioningCancelledError``.

        Raises:
            RemoteConnectionError: Connection could not be established
            BootstrapError: Salt could not be installed
            StagingError: A file or directory could not be put in place
            RemoteCommandError: salt-call exited non-zero
            GrainsError: Grains could not be generated
            ProvisioningCancelledError: ``cancel_event`` fired mid-apply
        """
        cancel_event = cancel_event or asyncio.Event()

        with structlog.contextvars.bound_contextvars(apply_id=uuid.uuid4().hex[:12]):
            logger.info("apply_started", command=self.command)
            pipeline = asyncio.create_task(self._run_pipeline())
            watcher = asyncio.create_task(self._watch_connection(pipeline, cancel_event))
            try:
                await pipeline
            except asyncio.CancelledError as e:
                current = asyncio.current_task()
                if cancel_event.is_set() and not (current and current.cancelling()):
                    raise self._cancelled() from e
                self._enter(Stage.CANCELLED)
                raise
            except Exception as e:
                if cancel_event.is_set():
                    raise self._cancelled() from e
                logger.error(
                    "apply_failed",
                    stage=self.stage.value,
                    error=self.ops.redact(str(e)),
                    error_type=type(e).__name__,
                )
                self._enter(Stage.FAILED)
                raise
            finally:
                await watcher
                # Connect may complete after the watcher already released
                await self._disconnect()

            self._enter(Stage.DONE)
            logger.info("apply_finished")

    def _cancelled(self) -> ProvisioningCancelledError:
        interrupted = self.stage
        logger.warning("apply_cancelled", stage=interrupted.value)
        self._enter(Stage.CANCELLED)
        return ProvisioningCancelledError(f"Provisioning cancelled during {interrupted.value}")

    async def _watch_connection(self, pipeline: asyncio.Task, cancel_event: asyncio.Event) -> None:
        cancelled = asyncio.create_task(cancel_event.wait())
        try:
            await asyncio.wait({pipeline, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()

        await self._disconnect()
        if not pipeline.done():
            pipeline.cancel()

    async def _disconnect(self) -> None:
        if not self._connected or self._disconnected:
            return
        self._disconnected = True
        try:
            await self.comm.disconnect()
        except Exception as e:
            logger.warning("disconnect_failed", error=str(e), error_type=type(e).__name__)
            return
        logger.info("disconnected")

    async def _run_pipeline(self) -> None:
        self._enter(Stage.CONNECTING)
        await connect_with_retry(self.comm, self.retry_policy, self.connect_timeout)
        self._connected = True

        self.sink.output("Provisioning with Salt...")

        if not self.config.skip_bootstrap:
            self._enter(Stage.BOOTSTRAPPING)
            await self._bootstrap()

        temp_dir = self.config.temp_config_dir
        self.sink.output(f"Creating remote temporary directory: {temp_dir}")
        with staging_errors("Error creating remote temporary directory", temp_dir):
            await self.ops.create_dir(temp_dir)

        if self.config.grains:
            self._enter(Stage.STAGING_GRAINS)
            await self._stage_grains()

        if self.config.minion_config_file is not None:
            self._enter(Stage.STAGING_MINION_CONFIG)
            await self._stage_minion_config()

        self._enter(Stage.STAGING_STATE_TREE)
        self.sink.output(f"Uploading local state tree: {self.config.local_state_tree}")
        await self._stage_tree(
            str(self.config.local_state_tree), "states", self.config.effective_state_tree
        )

        if self.config.local_pillar_roots is not None:
            self._enter(Stage.STAGING_PILLAR_ROOTS)
            self.sink.output(f"Uploading local pillar roots: {self.config.local_pillar_roots}")
            await self._stage_tree(
                str(self.config.local_pillar_roots), "pillar", self.config.effective_pillar_roots
            )

        self._enter(Stage.EXECUTING)
        self.sink.output(f"Running: {self.command}")
        try:
            await self.ops.run_command(self.command, privileged=True)
        except OSError as e:
            raise ProvisioningError(f"Error executing salt-call: {e}") from e

    async def _bootstrap(self) -> None:
        url = self.config.bootstrap_url
        # Fall back on wget if curl failed for any reason (such as not being installed)
        download = (
            f"curl -L {url} -o {BOOTSTRAP_SCRIPT_PATH} || wget -O {BOOTSTRAP_SCRIPT_PATH} {url}"
        )
        self.sink.output(f"Downloading saltstack bootstrap to {BOOTSTRAP_SCRIPT_PATH}")
        try:
            await self.ops.run_command(download, stream_output=False)
        except (RemoteCommandError, OSError) as e:
            raise BootstrapError(f"Unable to download Salt: {e}") from e

        install = f"sh {BOOTSTRAP_SCRIPT_PATH}"
        if self.config.bootstrap_args:
            install = f"{install} {self.config.bootstrap_args}"
        self.sink.output(f"Installing Salt with command {install}")
        try:
            await self.ops.run_command(install, privileged=True)
        except (RemoteCommandError, OSError) as e:
            raise BootstrapError(f"Unable to install Salt: {e}") from e

    async def _stage_grains(self) -> None:
        self.sink.output("Uploading grain file")
        staged = posixpath.join(self.config.temp_config_dir, "grains")

        with staged_grains_file(self.request.provider_state, self.config.tfvars) as grains_path:
            with staging_errors("Error uploading local grains file to remote", staged):
                await self.ops.upload_file(staged, grains_path)

        await self._ensure_salt_config_dir()
        with staging_errors(f"Unable to move {staged} to {REMOTE_GRAINS_FILE}", REMOTE_GRAINS_FILE):
            await self.ops.move(REMOTE_GRAINS_FILE, staged)

    async def _stage_minion_config(self) -> None:
        src = self.config.minion_config_file
        self.sink.output(f"Uploading minion config: {src}")
        staged = posixpath.join(self.config.temp_config_dir, "minion")

        with staging_errors("Error uploading local minion config file to remote", staged):
            await self.ops.upload_file(staged, src)

        await self._ensure_salt_config_dir()
        with staging_errors(
            f"Unable to move {staged} to {REMOTE_MINION_CONFIG_FILE}", REMOTE_MINION_CONFIG_FILE
        ):
            await self.ops.move(REMOTE_MINION_CONFIG_FILE, staged)

    async def _ensure_salt_config_dir(self) -> None:
        self.sink.output(f"Make sure directory {REMOTE_SALT_CONFIG_DIR} exists")
        with staging_errors(
            "Error creating remote salt configuration directory", REMOTE_SALT_CONFIG_DIR
        ):
            await self.ops.create_dir(REMOTE_SALT_CONFIG_DIR, privileged=True)

    async def _stage_tree(self, src: str, name: str, dst: str) -> None:
        """Upload ``src`` into staging, clear ``dst`` and move the upload into place."""
        staged = posixpath.join(self.config.temp_config_dir, name)

        with staging_errors(f"Error uploading {src} to remote", staged):
            await self.ops.upload_dir(staged, src, DEFAULT_UPLOAD_EXCLUDES)

        with staging_errors(f"Unable to clear {dst}", dst):
            await self.ops.remove_dir(dst)

        with staging_errors(f"Unable to move {staged} to {dst}", dst):
            await self.ops.move(dst, staged)
