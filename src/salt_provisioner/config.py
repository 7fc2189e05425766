"""Configuration for salt-provisioner.

Two layers live here:

* ``Settings`` - process-level settings (logging, connect timeout) read from
  environment variables prefixed with ``SALT_PROVISIONER_`` or a ``.env`` file.
* ``ProvisioningConfig`` - the immutable option set of a single apply, loaded
  from a YAML file and validated before any remote work starts.

Usage:
    from salt_provisioner.config import load_config

    config = load_config("provisioner.yaml", skip_bootstrap=True)
"""

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml

from .errors import ConfigError

# Fixed remote locations used by a masterless minion
DEFAULT_STATE_TREE_DIR = "/srv/salt"
DEFAULT_PILLAR_ROOT_DIR = "/srv/pillar"
REMOTE_SALT_CONFIG_DIR = "/etc/salt"
REMOTE_GRAINS_FILE = "/etc/salt/grains"
REMOTE_MINION_CONFIG_FILE = "/etc/salt/minion"

DEFAULT_TEMP_CONFIG_DIR = "/tmp/salt"
DEFAULT_BOOTSTRAP_URL = "https://bootstrap.saltproject.io"
DEFAULT_TFVARS_FILE = "terraform.tfvars"


class Settings(BaseSettings):
    """Process-level settings.

    All fields are optional with sensible defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix="SALT_PROVISIONER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    service_name: str = Field(
        default="salt-provisioner",
        description="Service name for structured logging",
    )
    log_format: Literal["json", "console"] = Field(
        default="console",
        description="Log output format",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
    )
    connect_timeout: float = Field(
        default=300.0,
        gt=0,
        description="Seconds to keep retrying the initial connection",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v


class ProvisioningConfig(BaseModel):
    """All options of one apply.

    Option names match the keys accepted in the YAML configuration file.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    local_state_tree: Path = Field(..., description="Local directory uploaded as the state tree")
    local_pillar_roots: Path | None = Field(
        default=None, description="Local directory uploaded as pillar roots"
    )
    remote_state_tree: str = Field(default="", description="Remote state tree destination")
    remote_pillar_roots: str = Field(default="", description="Remote pillar roots destination")
    minion_config_file: Path | None = Field(
        default=None, description="Local minion config; disables --file-root/--pillar-root"
    )
    temp_config_dir: str = Field(default=DEFAULT_TEMP_CONFIG_DIR)

    skip_bootstrap: bool = False
    bootstrap_args: str = ""
    bootstrap_url: str = DEFAULT_BOOTSTRAP_URL

    disable_sudo: bool = False
    sudo_password: SecretStr = SecretStr("")

    custom_state: str = Field(default="", description="State to apply; empty runs highstate")
    cmd_args: str = ""
    salt_call_args: str = ""
    log_level: str = Field(default="", description="salt-call log level; empty means info")
    no_exit_on_failure: bool = False

    grains: bool = True
    tfvars: Path = Path(DEFAULT_TFVARS_FILE)

    @field_validator("local_pillar_roots", "minion_config_file", mode="before")
    @classmethod
    def empty_path_is_none(cls, v: Any) -> Any:
        if v == "":
            return None
        return v

    @field_validator("local_state_tree", mode="before")
    @classmethod
    def state_tree_not_empty(cls, v: Any) -> Any:
        if v is None or v == "":
            raise ValueError("local_state_tree cannot be empty")
        return v

    @field_validator("local_state_tree")
    @classmethod
    def validate_state_tree(cls, v: Path) -> Path:
        return _require_dir(v, "local_state_tree")

    @field_validator("local_pillar_roots")
    @classmethod
    def validate_pillar_roots(cls, v: Path | None) -> Path | None:
        if v is None:
            return v
        return _require_dir(v, "local_pillar_roots")

    @field_validator("minion_config_file")
    @classmethod
    def validate_minion_config(cls, v: Path | None) -> Path | None:
        if v is None:
            return v
        if not v.exists():
            raise ValueError(f"minion_config_file: path '{v}' is invalid: does not exist")
        if v.is_dir():
            raise ValueError(f"minion_config_file: path '{v}' must point to a file")
        return v

    @model_validator(mode="after")
    def validate_addressing_mode(self) -> "ProvisioningConfig":
        if self.minion_config_file is not None and (
            self.remote_state_tree or self.remote_pillar_roots
        ):
            raise ValueError(
                "remote_state_tree and remote_pillar_roots only apply "
                "when minion_config_file is not used"
            )
        return self

    @property
    def effective_state_tree(self) -> str:
        return self.remote_state_tree or DEFAULT_STATE_TREE_DIR

    @property
    def effective_pillar_roots(self) -> str:
        return self.remote_pillar_roots or DEFAULT_PILLAR_ROOT_DIR

    @property
    def extra_call_args(self) -> str:
        """Free-form salt-call arguments, ``salt_call_args`` first."""
        return " ".join(arg for arg in (self.salt_call_args, self.cmd_args) if arg)


def _require_dir(path: Path, name: str) -> Path:
    if not path.exists():
        raise ValueError(f"{name}: path '{path}' is invalid: does not exist")
    if not path.is_dir():
        raise ValueError(f"{name}: path '{path}' must point to a directory")
    return path


def load_config(path: str | Path, **overrides: Any) -> ProvisioningConfig:
    """Load and validate a provisioning config from a YAML file.

    Relative content paths in the file are resolved against the file's directory;
    ``tfvars`` stays relative to the working directory.
    Keyword overrides win over values from the file.

    Raises:
        ConfigError: If the file cannot be read or is not a YAML mapping
        pydantic.ValidationError: If the options are invalid
    """
    path = Path(path)
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Unable to read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file {path}: {e}") from e

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a mapping, got {type(raw).__name__}")

    data = {**raw, **overrides}
    for key in ("local_state_tree", "local_pillar_roots", "minion_config_file"):
        value = data.get(key)
        if value and not Path(value).is_absolute():
            data[key] = path.parent / value

    return ProvisioningConfig.model_validate(data)
