"""Communicator backed by the OpenSSH client binaries.

Each remote command runs in its own ``ssh`` process; file transfer pipes data
through ``cat`` and directory transfer streams a local ``tar`` into a remote
one. Disconnecting terminates every process still running, which makes any
pending command fail with ``ConnectionError``.
"""

import asyncio
from collections.abc import Sequence
import os
from pathlib import Path
import shlex
from typing import BinaryIO

import structlog

from ..output import OutputPipe
from .base import RemoteCmd

logger = structlog.get_logger(__name__)

# ssh exits with 255 when the connection itself failed
SSH_CONNECTION_FAILED = 255
UPLOAD_CHUNK_SIZE = 64 * 1024


class SSHCommunicator:
    """Runs commands and transfers files through the local ``ssh`` client."""

    def __init__(
        self,
        host: str,
        *,
        user: str | None = None,
        port: int = 22,
        identity_file: str | Path | None = None,
        timeout: float = 300.0,
        ssh_options: Sequence[str] = (),
        connect_timeout: int = 10,
    ):
        self.host = host
        self.user = user
        self.port = port
        self.identity_file = identity_file
        self.ssh_options = tuple(ssh_options)
        self.connect_timeout = connect_timeout
        self._timeout = timeout
        self._connected = False
        self._processes: set[asyncio.subprocess.Process] = set()
        self._tasks: set[asyncio.Task] = set()

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host

    def build_ssh_args(self, command: str) -> list[str]:
        """Build the ssh argv that runs ``command`` on the target."""
        # In BatchMode, ssh fails instead of prompting for a password
        args = [
            "ssh",
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={self.connect_timeout}",
            "-p",
            str(self.port),
        ]
        if self.identity_file:
            args.extend(["-i", str(self.identity_file)])
        for option in self.ssh_options:
            args.extend(["-o", option])
        args.extend([self.destination, command])
        return args

    async def connect(self) -> None:
        proc = await self._spawn(
            self.build_ssh_args("true"),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise ConnectionError(
                f"ssh to {self.destination}:{self.port} failed "
                f"(exit {proc.returncode}): {stderr.decode(errors='replace').strip()}"
            )
        self._connected = True
        logger.info("ssh_connected", host=self.host, port=self.port, user=self.user)

    async def disconnect(self) -> None:
        self._connected = False
        running = [proc for proc in self._processes if proc.returncode is None]
        for proc in running:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
        logger.info("ssh_disconnected", host=self.host, terminated=len(running))

    async def start(self, cmd: RemoteCmd) -> None:
        self._ensure_connected()
        proc = await self._spawn(
            self.build_ssh_args(cmd.command),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        logger.debug("ssh_command_started", host=self.host, pid=proc.pid)
        task = asyncio.create_task(self._supervise(proc, cmd))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def upload(self, dst: str, data: BinaryIO) -> None:
        self._ensure_connected()
        proc = await self._spawn(
            self.build_ssh_args(f"cat > {shlex.quote(dst)}"),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        assert proc.stdin is not None
        try:
            while chunk := data.read(UPLOAD_CHUNK_SIZE):
                proc.stdin.write(chunk)
                await proc.stdin.drain()
        finally:
            proc.stdin.close()
        _, stderr = await proc.communicate()
        self._check_transfer(proc.returncode, stderr, dst)

    async def upload_dir(self, dst: str, src: str, exclude: Sequence[str] = ()) -> None:
        self._ensure_connected()
        tar_args = ["tar", "-c"]
        tar_args.extend(f"--exclude={pattern}" for pattern in exclude)
        tar_args.extend(["-C", src, "."])

        read_fd, write_fd = os.pipe()
        try:
            tar = await self._spawn(
                tar_args, stdout=write_fd, stderr=asyncio.subprocess.PIPE
            )
            remote = await self._spawn(
                self.build_ssh_args(f"tar -x -C {shlex.quote(dst)}"),
                stdin=read_fd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        finally:
            os.close(read_fd)
            os.close(write_fd)

        (_, tar_err), (_, remote_err) = await asyncio.gather(
            tar.communicate(), remote.communicate()
        )
        if tar.returncode != 0:
            raise OSError(
                f"tar of {src} failed (exit {tar.returncode}): "
                f"{tar_err.decode(errors='replace').strip()}"
            )
        self._check_transfer(remote.returncode, remote_err, dst)

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise ConnectionError(f"Not connected to {self.destination}")

    def _check_transfer(self, returncode: int | None, stderr: bytes, dst: str) -> None:
        message = stderr.decode(errors="replace").strip()
        if not self._connected:
            raise ConnectionError(f"Disconnected while uploading to {dst}")
        if returncode == SSH_CONNECTION_FAILED:
            raise ConnectionError(f"Connection lost while uploading to {dst}: {message}")
        if returncode != 0:
            raise OSError(f"Upload to {dst} failed (exit {returncode}): {message}")

    async def _spawn(self, args: list[str], **kwargs) -> asyncio.subprocess.Process:
        proc = await asyncio.create_subprocess_exec(*args, **kwargs)
        self._processes.add(proc)
        return proc

    async def _supervise(self, proc: asyncio.subprocess.Process, cmd: RemoteCmd) -> None:
        try:
            await asyncio.gather(
                _pump(proc.stdout, cmd.stdout),
                _pump(proc.stderr, cmd.stderr),
            )
            returncode = await proc.wait()
        except Exception as e:
            cmd.set_error(ConnectionError(f"Lost ssh process {proc.pid}: {e}"))
            return
        finally:
            self._processes.discard(proc)

        logger.debug("ssh_command_exited", pid=proc.pid, exit_status=returncode)
        if not self._connected:
            cmd.set_error(
                ConnectionError(f"Disconnected from {self.destination} while a command was running")
            )
        elif returncode == SSH_CONNECTION_FAILED:
            cmd.set_error(
                ConnectionError(f"Connection to {self.destination} lost while a command was running")
            )
        else:
            cmd.set_exit_status(returncode)


async def _pump(stream: asyncio.StreamReader | None, pipe: OutputPipe | None) -> None:
    if stream is None:
        return
    while chunk := await stream.read(UPLOAD_CHUNK_SIZE):
        if pipe is not None:
            pipe.write(chunk)
