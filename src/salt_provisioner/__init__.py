"""Masterless SaltStack provisioning of fresh machines over SSH."""

from .command import build_command, elevate
from .config import ProvisioningConfig, Settings, load_config
from .grains import build_grains
from .provisioner import Provisioner, ProvisioningRequest, Stage

__version__ = "0.1.0"

__all__ = [
    "Provisioner",
    "ProvisioningConfig",
    "ProvisioningRequest",
    "Settings",
    "Stage",
    "build_command",
    "build_grains",
    "elevate",
    "load_config",
]
