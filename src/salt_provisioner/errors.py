"""Exception hierarchy for salt-provisioner.

Every failure of an apply surfaces as a ``ProvisioningError`` subclass that
carries enough context (path, command, exit status) to diagnose the problem
without re-running.
"""


class ProvisioningError(Exception):
    """Base class for all provisioning failures."""

    pass


class ConfigError(ProvisioningError):
    """Raised when a configuration file cannot be read or parsed."""

    pass


class RemoteConnectionError(ProvisioningError):
    """Raised when the communicator could not connect before the timeout."""

    pass


class BootstrapError(ProvisioningError):
    """Raised when downloading or running the Salt bootstrap script fails."""

    pass


class StagingError(ProvisioningError):
    """Raised when an upload, move, remove or mkdir fails during staging."""

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path


class RemoteCommandError(ProvisioningError):
    """Raised when a remote command exits with a non-zero status."""

    def __init__(self, command: str, exit_status: int):
        super().__init__(f"Command {command!r} exited with status {exit_status}")
        self.command = command
        self.exit_status = exit_status


class GrainsError(ProvisioningError):
    """Base class for grains generation failures."""

    pass


class GrainsDecodeError(GrainsError):
    """Raised when provider state or the variables file is not structured data."""

    pass


class GrainsIOError(GrainsError):
    """Raised when the variables file or the temporary grains file is unusable."""

    pass


class ProvisioningCancelledError(ProvisioningError):
    """Raised when the apply was cancelled while a stage was running."""

    pass
