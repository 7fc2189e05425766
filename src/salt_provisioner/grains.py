"""Grains generation.

Provider state of the new machine and the local Terraform variables file are
merged into one JSON document that becomes ``/etc/salt/grains`` on the target.
Variables win over provider state on key collisions.
"""

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
import json
import os
from pathlib import Path
import tempfile
from typing import Any

import hcl
from pydantic import BaseModel
import structlog

from .errors import GrainsDecodeError, GrainsIOError

logger = structlog.get_logger(__name__)

GRAINS_FILE_PREFIX = "tf-grain-content"


@dataclass(frozen=True)
class GrainsFile:
    """Local grains file ready for upload."""

    path: Path
    temporary: bool


def decode_provider_state(provider_state: Mapping[str, Any] | BaseModel | None) -> dict[str, Any]:
    """Turn provider state into a plain JSON-compatible dict."""
    if provider_state is None:
        return {}
    if isinstance(provider_state, BaseModel):
        return provider_state.model_dump(mode="json")

    try:
        decoded = json.loads(json.dumps(provider_state))
    except (TypeError, ValueError) as e:
        raise GrainsDecodeError(f"Error decoding provider state grains: {e}") from e

    if not isinstance(decoded, dict):
        raise GrainsDecodeError(
            f"Provider state must be a mapping, got {type(provider_state).__name__}"
        )
    return decoded


def load_tfvars(path: Path) -> dict[str, Any]:
    """Read a Terraform variables file (HCL, or JSON for ``*.json``)."""
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise GrainsIOError(f"Unable to read variables file {path}: {e}") from e

    if not content.strip():
        return {}

    try:
        if path.suffix == ".json":
            parsed = json.loads(content)
        else:
            parsed = hcl.loads(content)
    except ValueError as e:
        raise GrainsDecodeError(f"Error decoding {path} for grains: {e}") from e

    if not isinstance(parsed, dict):
        raise GrainsDecodeError(f"Variables file {path} must decode to a mapping")
    return parsed


def merge_grains(
    provider_grains: Mapping[str, Any], tfvars_grains: Mapping[str, Any]
) -> dict[str, Any]:
    return {**provider_grains, **tfvars_grains}


def build_grains(
    provider_state: Mapping[str, Any] | BaseModel | None, tfvars_path: str | Path
) -> GrainsFile:
    """Merge provider state with the variables file into a temporary JSON file.

    The caller owns the returned file and must delete it when ``temporary``
    is set; ``staged_grains_file`` does that automatically.

    Raises:
        GrainsIOError: Variables file unreadable, or temp file not writable
        GrainsDecodeError: A source is not structured data
    """
    provider_grains = decode_provider_state(provider_state)
    logger.debug("grains_provider_state_decoded", keys=sorted(provider_grains))

    tfvars_path = Path(tfvars_path)
    logger.info("grains_tfvars_loading", path=str(tfvars_path.absolute()))
    tfvars_grains = load_tfvars(tfvars_path)

    grains = merge_grains(provider_grains, tfvars_grains)
    logger.info(
        "grains_merged",
        provider_keys=len(provider_grains),
        tfvars_keys=len(tfvars_grains),
        total_keys=len(grains),
    )

    try:
        content = json.dumps(grains)
    except (TypeError, ValueError) as e:
        raise GrainsDecodeError(f"Unable to convert grains to JSON: {e}") from e

    try:
        with tempfile.NamedTemporaryFile(
            mode="w", prefix=GRAINS_FILE_PREFIX, suffix=".json", delete=False, encoding="utf-8"
        ) as grains_file:
            path = Path(grains_file.name)
            try:
                grains_file.write(content)
            except OSError:
                grains_file.close()
                path.unlink(missing_ok=True)
                raise
    except OSError as e:
        raise GrainsIOError(f"Unable to write temporary grains file: {e}") from e

    logger.info("grains_file_written", path=str(path), size=len(content))
    return GrainsFile(path=path, temporary=True)


@contextmanager
def staged_grains_file(
    provider_state: Mapping[str, Any] | BaseModel | None, tfvars_path: str | Path
) -> Iterator[Path]:
    """Build the grains file and remove it on exit if it was generated."""
    grains_file = build_grains(provider_state, tfvars_path)
    try:
        yield grains_file.path
    finally:
        if grains_file.temporary:
            try:
                os.remove(grains_file.path)
            except OSError as e:
                logger.warning("grains_file_cleanup_failed", path=str(grains_file.path), error=str(e))
