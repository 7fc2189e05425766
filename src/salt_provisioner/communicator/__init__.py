from .base import Communicator, RemoteCmd
from .retry import RetryPolicy, connect_with_retry
from .ssh import SSHCommunicator

__all__ = [
    "Communicator",
    "RemoteCmd",
    "RetryPolicy",
    "SSHCommunicator",
    "connect_with_retry",
]
