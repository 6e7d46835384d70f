"""Pytest fixtures for Proxmox provider tests."""

from typing import Any
from unittest.mock import MagicMock

import pytest

from proxmox_provider.cancellation import CancelToken
from proxmox_provider.models import MachineConfig, ProvisioningState, StoragePool
from proxmox_provider.proxmox_api import ProxmoxClient
from proxmox_provider.steps import ProvisionContext


class FakeContext(ProvisionContext):
    """In-memory ProvisionContext recording what the steps ask for."""

    def __init__(
        self,
        provider_data: dict[str, Any] | None = None,
        state: ProvisioningState | None = None,
        request_id: str = "talos-worker-1",
        request_set_id: str | None = None,
        talos_version: str = "v1.12.0",
        join_config: str = "",
    ) -> None:
        self.provider_data = provider_data if provider_data is not None else {"storage_selector": "true"}
        self.state = state or ProvisioningState()
        self._request_id = request_id
        self._request_set_id = request_set_id
        self._talos_version = talos_version
        self._join_config = join_config
        self.schematic_requests: list[list[str]] = []
        self.machine_uuid = ""

    @property
    def request_id(self) -> str:
        return self._request_id

    @property
    def request_set_id(self) -> str | None:
        return self._request_set_id

    @property
    def talos_version(self) -> str:
        return self._talos_version

    @property
    def join_config(self) -> str:
        return self._join_config

    def machine_config(self) -> MachineConfig:
        return MachineConfig.model_validate(self.provider_data)

    def generate_schematic_id(self, extensions: list[str]) -> str:
        self.schematic_requests.append(list(extensions))
        return "376567988ad370138ad8b2698212367b8edcb69b5fd68c80be1f2ec7d603b4ba"

    def set_machine_uuid(self, uuid: str) -> None:
        self.machine_uuid = uuid


@pytest.fixture
def cancel() -> CancelToken:
    """Fresh, uncancelled token."""
    return CancelToken()


@pytest.fixture
def mock_api() -> MagicMock:
    """Mock proxmoxer API object."""
    return MagicMock()


@pytest.fixture
def mock_client() -> MagicMock:
    """Mock ProxmoxClient with sensible storage defaults."""
    client = MagicMock(spec=ProxmoxClient)
    client.list_storages.return_value = [
        StoragePool("local", "pve1", "dir", 50 * 1024**3, ("iso", "vztmpl", "backup")),
        StoragePool("local-lvm", "pve1", "lvmthin", 400 * 1024**3, ("images", "rootdir")),
        StoragePool("tank", "pve1", "zfspool", 2000 * 1024**3, ("images",)),
    ]
    client.iso_storage.return_value = StoragePool("local", "pve1", "dir", 50 * 1024**3, ("iso",))
    return client


@pytest.fixture
def context() -> FakeContext:
    """Context with a minimal machine config."""
    return FakeContext()


@pytest.fixture
def make_context() -> type[FakeContext]:
    """Factory for contexts with custom provider data or state."""
    return FakeContext


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Any) -> None:
    """Isolate settings from the developer's environment and .env file."""
    for name in (
        "URL",
        "USERNAME",
        "PASSWORD",
        "REALM",
        "TOKEN_ID",
        "TOKEN_SECRET",
        "TOKEN",
        "INSECURE_SKIP_VERIFY",
        "TIMEOUT",
    ):
        monkeypatch.delenv(f"PROXMOX_{name}", raising=False)
    for name in ("IMAGE_FACTORY_URL", "DEPROVISION_POLL_INTERVAL", "MAX_STEP_ATTEMPTS"):
        monkeypatch.delenv(f"PROVIDER_{name}", raising=False)
    monkeypatch.chdir(tmp_path)
