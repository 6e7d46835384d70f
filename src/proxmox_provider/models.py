"""Data models for machine requests and provisioning state."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_NETWORK_BRIDGE = "vmbr0"


class AdditionalDisk(BaseModel):
    """Extra SCSI disk attached after the primary one."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    storage_selector: str
    disk_size: int = Field(ge=1, description="Disk size in GiB")
    disk_cache: str = ""
    disk_aio: str = ""
    disk_ssd: bool = False
    disk_discard: bool = False
    disk_iothread: bool = False


class AdditionalNIC(BaseModel):
    """Extra network interface, e.g. for storage or backup networks."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    bridge: str
    vlan: int = Field(default=0, ge=0)
    firewall: bool = False


class PCIDevice(BaseModel):
    """PCI passthrough through a Proxmox resource mapping."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    mapping: str = Field(description="Resource mapping name, e.g. nvidia-gpu-1")
    pcie: bool = False
    primary_gpu: bool = False
    rombar: bool = False


class MachineConfig(BaseModel):
    """User-declared VM configuration carried by a machine request."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    node: str = ""
    storage_selector: str = ""

    cores: int = Field(default=2, ge=1)
    sockets: int = Field(default=1, ge=1)
    memory: int = Field(default=4096, ge=1, description="Memory in MiB")

    disk_size: int = Field(default=20, ge=1, description="Primary disk size in GiB")
    disk_ssd: bool = False
    disk_discard: bool = False
    disk_iothread: bool = False
    disk_cache: str = ""
    disk_aio: str = ""

    network_bridge: str = DEFAULT_NETWORK_BRIDGE
    vlan: int = Field(default=0, ge=0)

    machine_type: str = ""
    cpu_type: str = ""
    numa: bool = False
    hugepages: str = ""
    # None leaves ballooning at the Proxmox default
    balloon: bool | None = None

    additional_disks: list[AdditionalDisk] = Field(default_factory=list)
    additional_nics: list[AdditionalNIC] = Field(default_factory=list)
    pci_devices: list[PCIDevice] = Field(default_factory=list)

    @field_validator("network_bridge", mode="before")
    @classmethod
    def _default_bridge(cls, value: Any) -> Any:
        if value is None or value == "":
            return DEFAULT_NETWORK_BRIDGE
        return value


# Persisted keys match the orchestrator resource fields
_STATE_KEYS = {
    "node": "node",
    "schematic": "schematic",
    "talos_version": "talosVersion",
    "volume_id": "volumeId",
    "volume_upload_task": "volumeUploadTask",
    "uuid": "uuid",
    "vm_create_task": "vmCreateTask",
    "vmid": "vmid",
    "vm_start_task": "vmStartTask",
    "cloud_init_task": "cloudInitTask",
}


@dataclass
class ProvisioningState:
    """Per-machine state persisted by the orchestrator between step runs."""

    node: str = ""
    schematic: str = ""
    talos_version: str = ""
    volume_id: str = ""
    volume_upload_task: str = ""
    uuid: str = ""
    vm_create_task: str = ""
    vmid: int = 0
    vm_start_task: str = ""
    cloud_init_task: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ProvisioningState":
        """Create state from its persisted mapping, ignoring unknown keys."""
        data = data or {}
        kwargs: dict[str, Any] = {}
        for attr, key in _STATE_KEYS.items():
            if data.get(key) is None:
                continue
            kwargs[attr] = int(data[key]) if attr == "vmid" else str(data[key])
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the persisted mapping."""
        return {key: getattr(self, attr) for attr, key in _STATE_KEYS.items()}


@dataclass(frozen=True)
class NodeStatus:
    """Load snapshot of a cluster node used for placement."""

    name: str
    memory_free: float
    same_request_set_vms: int = 0


@dataclass(frozen=True)
class StoragePool:
    """Storage backend on a node as reported by the API."""

    name: str
    node: str
    type: str
    available: int
    content: tuple[str, ...] = field(default_factory=tuple)

    @property
    def holds_isos(self) -> bool:
        return "iso" in self.content


class TaskState(Enum):
    """Reduced state of a Proxmox task."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class TaskStatus:
    """Result of one task status poll."""

    state: TaskState
    status: str
    exit_status: str = ""

    @property
    def is_running(self) -> bool:
        return self.state == TaskState.RUNNING

    @property
    def is_successful(self) -> bool:
        return self.state == TaskState.SUCCEEDED

    @property
    def is_failed(self) -> bool:
        return self.state == TaskState.FAILED
