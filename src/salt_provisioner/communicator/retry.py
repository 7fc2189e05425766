"""Connect-with-retry for freshly created machines.

A new machine usually refuses connections for a while (sshd not up yet,
network still configuring), so the first connect is retried with exponential
backoff until the communicator's timeout elapses. Transport errors
(``OSError``) are transient, except a missing or unusable local client.
"""

import asyncio
from collections.abc import Iterator
from dataclasses import dataclass

import structlog

from ..errors import RemoteConnectionError
from .base import Communicator

logger = structlog.get_logger(__name__)

# Raised when the local client binary is missing or not executable
NON_TRANSIENT_ERRORS = (FileNotFoundError, PermissionError)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff policy for connection attempts."""

    initial_delay: float = 1.0
    max_delay: float = 10.0
    multiplier: float = 2.0

    def delays(self) -> Iterator[float]:
        delay = self.initial_delay
        while True:
            yield delay
            delay = min(delay * self.multiplier, self.max_delay)


async def connect_with_retry(
    comm: Communicator,
    policy: RetryPolicy | None = None,
    timeout: float | None = None,
) -> int:
    """Connect ``comm``, retrying transient failures until ``timeout``.

    Args:
        comm: Communicator to connect
        policy: Backoff policy (defaults to 1s doubling up to 10s)
        timeout: Overall deadline in seconds (defaults to ``comm.timeout``)

    Returns:
        Number of attempts it took

    Raises:
        RemoteConnectionError: On timeout or a non-transient connect error
    """
    policy = policy or RetryPolicy()
    timeout = comm.timeout if timeout is None else timeout
    delays = policy.delays()
    attempt = 0
    last_error: OSError | None = None

    try:
        async with asyncio.timeout(timeout):
            while True:
                attempt += 1
                try:
                    await comm.connect()
                except NON_TRANSIENT_ERRORS as e:
                    raise _fatal(attempt, e) from e
                except OSError as e:
                    last_error = e
                    delay = next(delays)
                    logger.warning(
                        "connect_attempt_failed",
                        attempt=attempt,
                        error=str(e),
                        error_type=type(e).__name__,
                        retry_in=delay,
                    )
                    await asyncio.sleep(delay)
                    continue
                except Exception as e:
                    raise _fatal(attempt, e) from e

                logger.info("connected", attempts=attempt)
                return attempt
    except TimeoutError as e:
        raise RemoteConnectionError(
            f"Timeout after {timeout}s waiting to connect ({attempt} attempts): {last_error}"
        ) from (last_error or e)


def _fatal(attempt: int, error: Exception) -> RemoteConnectionError:
    logger.error(
        "connect_failed", attempt=attempt, error=str(error), error_type=type(error).__name__
    )
    return RemoteConnectionError(f"Unable to connect: {error}")
