"""Proxmox VE infrastructure provider for Talos machine requests."""

from .models import MachineConfig, ProvisioningState
from .provision import Provisioner
from .steps import ProvisionContext, Step, StepResult

__all__ = [
    "MachineConfig",
    "ProvisionContext",
    "Provisioner",
    "ProvisioningState",
    "Step",
    "StepResult",
]

__version__ = "0.1.0"
