"""structlog setup for the salt-provisioner CLI.

Log events go to stderr; stdout is left to relayed remote output and command
results. Values come from ``Settings`` so the environment is read in one place.
"""

from collections.abc import Iterable
import logging
import sys

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

from .config import Settings

REDACTED = "********"


class SecretMasker:
    """Processor that masks known secrets in every string value of an event."""

    def __init__(self, secrets: Iterable[str] = ()):
        self.secrets = [secret for secret in secrets if secret]

    def __call__(self, logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        if not self.secrets:
            return event_dict
        for key, value in event_dict.items():
            if isinstance(value, str):
                event_dict[key] = self.mask(value)
        return event_dict

    def mask(self, text: str) -> str:
        for secret in self.secrets:
            text = text.replace(secret, REDACTED)
        return text


def setup_logging(
    settings: Settings | None = None,
    *,
    json_logs: bool = False,
    secrets: Iterable[str] = (),
) -> None:
    """Configure structlog on top of stdlib logging.

    Args:
        settings: Service name, format and level (defaults to ``Settings()``)
        json_logs: Force JSON output regardless of ``settings.log_format``
        secrets: Strings masked wherever they appear in an event
    """
    settings = settings or Settings()
    log_format = "json" if json_logs else settings.log_format

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, settings.log_level),
        force=True,
    )

    processors: list[Processor] = [
        # apply_id and host are bound per apply
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if log_format == "json":
        processors += [
            structlog.processors.format_exc_info,
            SecretMasker(secrets),
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors += [
            SecretMasker(secrets),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    structlog.contextvars.bind_contextvars(service=settings.service_name)
    structlog.get_logger(__name__).debug(
        "logging_configured", log_format=log_format, log_level=settings.log_level
    )
