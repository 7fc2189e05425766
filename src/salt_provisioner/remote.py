"""Remote operation primitives on top of a connected communicator.

Every primitive blocks until the remote side reports completion. Commands
that change system locations go through the sudo wrapper; the staging
directory is written unprivileged because uploads run as the connecting user.
"""

import asyncio
from collections.abc import Sequence
from pathlib import Path
import shlex

import structlog

from .command import elevate
from .communicator import Communicator, RemoteCmd
from .errors import RemoteCommandError
from .output import OutputPipe, ProgressSink, relay_lines

logger = structlog.get_logger(__name__)

DEFAULT_UPLOAD_EXCLUDES = (".git",)
REDACTED = "********"


class RemoteOperations:
    """Thin wrappers around a communicator for one apply."""

    def __init__(
        self,
        comm: Communicator,
        sink: ProgressSink,
        *,
        disable_sudo: bool = False,
        sudo_password: str = "",
    ):
        self.comm = comm
        self.sink = sink
        self.disable_sudo = disable_sudo
        self._sudo_password = sudo_password

    def sudo(self, command: str) -> str:
        return elevate(command, disable_sudo=self.disable_sudo, sudo_password=self._sudo_password)

    async def create_dir(self, path: str, *, privileged: bool = False) -> None:
        self.sink.output(f"Creating directory: {path}")
        await self.run_command(f"mkdir -p {shlex.quote(path)}", privileged=privileged)

    async def remove_dir(self, path: str) -> None:
        self.sink.output(f"Removing directory: {path}")
        await self.run_command(f"rm -rf {shlex.quote(path)}", privileged=True)

    async def move(self, dst: str, src: str) -> None:
        self.sink.output(f"Moving {src} to {dst}")
        await self.run_command(f"mv {shlex.quote(src)} {shlex.quote(dst)}", privileged=True)

    async def upload_file(self, dst: str, src: str | Path) -> None:
        """Stream the local file ``src`` to ``dst``.

        Raises:
            OSError: If ``src`` cannot be opened or the transfer fails
        """
        logger.info("upload_file", src=str(src), dst=dst)
        with open(src, "rb") as f:
            await self.comm.upload(dst, f)

    async def upload_dir(
        self,
        dst: str,
        src: str | Path,
        exclude: Sequence[str] = DEFAULT_UPLOAD_EXCLUDES,
    ) -> None:
        """Copy the contents of the local directory ``src`` into ``dst``."""
        await self.create_dir(dst)

        # A trailing "/" copies the contents instead of the directory itself
        src = str(src)
        if not src.endswith("/"):
            src = src + "/"

        logger.info("upload_dir", src=src, dst=dst, exclude=list(exclude))
        await self.comm.upload_dir(dst, src, exclude)

    async def run_command(
        self,
        command: str,
        *,
        privileged: bool = False,
        stream_output: bool = True,
    ) -> None:
        """Run ``command`` remotely and wait for it to exit.

        Output lines are relayed to the progress sink while the command runs.

        Raises:
            RemoteCommandError: If the command exits non-zero
            OSError: On transport failure
        """
        if privileged:
            command = self.sudo(command)

        shown = self.redact(command)

        if not stream_output:
            cmd = RemoteCmd(command=command)
            logger.debug("remote_command_started", command=shown)
            await self._start_and_wait(cmd, shown)
            return

        stdout, stderr = OutputPipe(), OutputPipe()
        cmd = RemoteCmd(command=command, stdout=stdout, stderr=stderr)
        relays = [
            asyncio.create_task(relay_lines(stdout, self.sink)),
            asyncio.create_task(relay_lines(stderr, self.sink)),
        ]
        logger.debug("remote_command_started", command=shown)
        try:
            await self._start_and_wait(cmd, shown)
        finally:
            stdout.close()
            stderr.close()
            await asyncio.gather(*relays)
        logger.debug("remote_command_finished", command=shown)

    async def _start_and_wait(self, cmd: RemoteCmd, shown: str) -> None:
        await self.comm.start(cmd)
        try:
            await cmd.wait()
        except RemoteCommandError as e:
            if shown == cmd.command:
                raise
            # The elevated command line carries the sudo password
            raise RemoteCommandError(shown, e.exit_status) from None

    def redact(self, text: str) -> str:
        """Mask the sudo password in ``text``."""
        if self._sudo_password:
            return text.replace(self._sudo_password, REDACTED)
        return text
