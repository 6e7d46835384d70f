"""Proxmox VE API access via proxmoxer."""

from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import structlog
from proxmoxer import ProxmoxAPI
from proxmoxer.core import ResourceException

from .config import ProxmoxSettings
from .errors import ResourceNotFoundError
from .models import StoragePool

logger = structlog.get_logger(__name__)

DEFAULT_API_PORT = 8006


def _split_token(user_token: str) -> tuple[str, str]:
    if "!" not in user_token:
        raise ValueError(f"API token id {user_token!r} must look like user@realm!name")
    user, token_name = user_token.split("!", 1)
    return user, token_name


def connect(settings: ProxmoxSettings) -> ProxmoxAPI:
    """Create a proxmoxer client from settings.

    Credential precedence: username/password, then a full ``token``
    (``user@realm!name=secret``), then ``token_id`` + ``token_secret``.
    """
    url = settings.url if "://" in settings.url else f"https://{settings.url}"
    parsed = urlparse(url)
    if not parsed.hostname:
        raise ValueError(f"cannot parse Proxmox URL {settings.url!r}")

    options: dict[str, Any] = {
        "port": parsed.port or DEFAULT_API_PORT,
        "verify_ssl": not settings.insecure_skip_verify,
        "timeout": settings.timeout,
    }
    if settings.insecure_skip_verify:
        logger.info("using insecure connection to Proxmox")

    if settings.has_password_auth:
        user = settings.username
        if settings.realm and "@" not in user:
            user = f"{user}@{settings.realm}"
        return ProxmoxAPI(parsed.hostname, user=user, password=settings.password, **options)

    if settings.token:
        if "=" not in settings.token:
            raise ValueError("PROXMOX_TOKEN must look like user@realm!name=secret")
        user_token, token_value = settings.token.split("=", 1)
    elif settings.token_id and settings.token_secret:
        user_token, token_value = settings.token_id, settings.token_secret
    else:
        raise ValueError("no Proxmox credentials configured (username/password or API token)")

    user, token_name = _split_token(user_token)
    return ProxmoxAPI(
        parsed.hostname, user=user, token_name=token_name, token_value=token_value, **options
    )


class ProxmoxClient:
    """Wrapper around the Proxmox API calls the provider relies on.

    Every method issues live requests; nothing is cached between calls.
    """

    def __init__(self, api: Any) -> None:
        self.api = api

    @classmethod
    def from_settings(cls, settings: ProxmoxSettings) -> "ProxmoxClient":
        return cls(connect(settings))

    # === NODES ===

    def list_nodes(self) -> list[dict[str, Any]]:
        """Cluster nodes with ``node``, ``status``, ``maxmem`` and ``mem``."""
        return self.api.nodes.get() or []  # type: ignore[no-any-return]

    def list_vms(self, node: str) -> list[dict[str, Any]]:
        return self.api.nodes(node).qemu.get() or []  # type: ignore[no-any-return]

    # === STORAGE ===

    def list_storages(self, node: str) -> list[StoragePool]:
        """Storage pools on a node, in API order."""
        pools = []
        for item in self.api.nodes(node).storage.get() or []:
            content = tuple(c.strip() for c in str(item.get("content", "")).split(",") if c.strip())
            pools.append(
                StoragePool(
                    name=item["storage"],
                    node=node,
                    type=item.get("type", ""),
                    available=int(item.get("avail") or 0),
                    content=content,
                )
            )
        return pools

    def iso_storage(self, node: str) -> StoragePool:
        """First storage on the node that accepts ISO images."""
        for pool in self.list_storages(node):
            if pool.holds_isos:
                return pool
        raise ResourceNotFoundError(f"no storage with ISO content on node {node!r}")

    def find_iso(self, node: str, storage: str, filename: str) -> str | None:
        """Return the volume id of an ISO in storage, or None if absent."""
        content = self.api.nodes(node).storage(storage).content.get(content="iso") or []
        for item in content:
            volid = item.get("volid", "")
            if volid.endswith(f"iso/{filename}"):
                return volid  # type: ignore[no-any-return]
        return None

    def download_url(self, node: str, storage: str, filename: str, url: str) -> str:
        """Start an asynchronous download into ISO storage; returns the task UPID."""
        return self.api.nodes(node).storage(storage)("download-url").post(  # type: ignore[no-any-return]
            content="iso", filename=filename, url=url
        )

    def upload_iso(self, node: str, storage: str, path: Path) -> str:
        """Upload a local ISO file; the stored name is the file's name."""
        with open(path, "rb") as iso_file:
            return self.api.nodes(node).storage(storage).upload.post(  # type: ignore[no-any-return]
                content="iso", filename=iso_file
            )

    def delete_volume(self, node: str, storage: str, volid: str) -> None:
        self.api.nodes(node).storage(storage).content(volid).delete()

    # === VIRTUAL MACHINES ===

    def next_vmid(self) -> int:
        return int(self.api.cluster.nextid.get())

    def create_vm(self, node: str, vmid: int, options: list[tuple[str, Any]]) -> str:
        """Create a VM from ordered options; returns the task UPID."""
        return self.api.nodes(node).qemu.post(vmid=vmid, **dict(options))  # type: ignore[no-any-return]

    def vm_status(self, node: str, vmid: int) -> dict[str, Any]:
        """Current VM status.

        Raises:
            ResourceNotFoundError: If the VM does not exist on the node
        """
        try:
            return self.api.nodes(node).qemu(vmid).status.current.get()  # type: ignore[no-any-return]
        except ResourceException as e:
            if "does not exist" in str(e):
                raise ResourceNotFoundError(f"VM {vmid} does not exist on node {node!r}") from e
            raise

    def set_vm_config(self, node: str, vmid: int, **options: Any) -> None:
        """Apply VM config options synchronously."""
        self.api.nodes(node).qemu(vmid).config.put(**options)

    def start_vm(self, node: str, vmid: int) -> str:
        return self.api.nodes(node).qemu(vmid).status.start.post()  # type: ignore[no-any-return]

    def stop_vm(self, node: str, vmid: int) -> str:
        return self.api.nodes(node).qemu(vmid).status.stop.post()  # type: ignore[no-any-return]

    def delete_vm(self, node: str, vmid: int) -> str:
        return self.api.nodes(node).qemu(vmid).delete()  # type: ignore[no-any-return]

    # === TASKS ===

    def task_status(self, node: str, upid: str) -> dict[str, Any]:
        """Raw task status with ``status`` and, once stopped, ``exitstatus``."""
        return self.api.nodes(node).tasks(upid).status.get()  # type: ignore[no-any-return]
