"""Communicator interface consumed by the provisioner."""

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import BinaryIO, Protocol

from ..errors import RemoteCommandError
from ..output import OutputPipe


@dataclass
class RemoteCmd:
    """One remote command in flight.

    The communicator writes output into ``stdout``/``stderr`` (when set) and
    completes the command with ``set_exit_status`` or ``set_error``.
    """

    command: str
    stdout: OutputPipe | None = None
    stderr: OutputPipe | None = None
    _done: asyncio.Future[int] | None = field(default=None, init=False, repr=False)

    def _future(self) -> asyncio.Future[int]:
        if self._done is None:
            self._done = asyncio.get_running_loop().create_future()
        return self._done

    def set_exit_status(self, status: int) -> None:
        done = self._future()
        if not done.done():
            done.set_result(status)

    def set_error(self, error: BaseException) -> None:
        done = self._future()
        if not done.done():
            done.set_exception(error)

    @property
    def exited(self) -> bool:
        return self._done is not None and self._done.done()

    async def wait(self) -> None:
        """Block until the command exits.

        Raises:
            RemoteCommandError: If the command exited with a non-zero status
        """
        status = await self._future()
        if status != 0:
            raise RemoteCommandError(self.command, status)


class Communicator(Protocol):
    """Remote execution channel to the machine being provisioned.

    Transport failures (including use after ``disconnect``) surface as
    ``OSError`` subclasses so callers can tell them apart from command
    failures.
    """

    @property
    def timeout(self) -> float:
        """Seconds to keep retrying ``connect``."""
        ...

    async def connect(self) -> None:
        ...

    async def disconnect(self) -> None:
        ...

    async def start(self, cmd: RemoteCmd) -> None:
        """Start ``cmd`` and return without waiting for it to exit."""
        ...

    async def upload(self, dst: str, data: BinaryIO) -> None:
        ...

    async def upload_dir(self, dst: str, src: str, exclude: Sequence[str] = ()) -> None:
        """Copy the contents of ``src`` (ending in ``/``) into ``dst``."""
        ...
