"""NoCloud seed generation for Talos VMs.

Talos reads its machine config from the NoCloud ``user-data`` file and the
hostname from ``meta-data``. Talos 1.12 introduced the ``HostnameConfig``
document; older releases take the hostname from ``machine.network``.
"""

import io
import re
from pathlib import Path
from typing import Any

import pycdlib
import yaml

HOSTNAME_CONFIG_MIN_VERSION = (1, 12)
NETWORK_CONFIG = "version: 1\n"
SEED_VOLUME_LABEL = "cidata"

_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)")

# Seed file name to its ISO 9660 path
_SEED_FILES = {
    "user-data": "/USERDATA.;1",
    "meta-data": "/METADATA.;1",
    "network-config": "/NETWORK.;1",
}


def seed_iso_name(vmid: int) -> str:
    return f"user-data-{vmid}.iso"


def supports_hostname_config(talos_version: str) -> bool:
    """Unparseable versions are assumed to be current releases."""
    match = _VERSION_RE.match(talos_version.strip())
    if not match:
        return True
    return (int(match.group(1)), int(match.group(2))) >= HOSTNAME_CONFIG_MIN_VERSION


def hostname_config(talos_version: str, hostname: str) -> str:
    """Config document that sets the node hostname for the given Talos version."""
    if supports_hostname_config(talos_version):
        document: dict[str, Any] = {
            "apiVersion": "v1alpha1",
            "kind": "HostnameConfig",
            "hostname": hostname,
        }
    else:
        document = {"machine": {"network": {"hostname": hostname}}}
    return yaml.safe_dump(document, sort_keys=False)


def _merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def build_user_data(join_config: str, talos_version: str, hostname: str) -> str:
    """Join config plus the hostname setting.

    New releases get a separate ``HostnameConfig`` document; for legacy
    releases the hostname is merged into the v1alpha1 machine config.
    """
    document = hostname_config(talos_version, hostname)
    if not join_config.strip():
        return document

    if supports_hostname_config(talos_version):
        return join_config.rstrip("\n") + "\n---\n" + document

    patch = yaml.safe_load(document)
    documents = [d for d in yaml.safe_load_all(join_config) if d is not None]
    for existing in documents:
        if isinstance(existing, dict) and "kind" not in existing:
            _merge(existing, patch)
            break
    else:
        documents.append(patch)
    return yaml.safe_dump_all(documents, sort_keys=False)


def build_meta_data(instance_id: str, hostname: str) -> str:
    return yaml.safe_dump(
        {"instance-id": instance_id, "local-hostname": hostname, "hostname": hostname},
        sort_keys=False,
    )


def build_seed_iso(path: Path, user_data: str, meta_data: str, network_config: str = NETWORK_CONFIG) -> Path:
    """Write a NoCloud seed ISO (volume label ``cidata``) to ``path``."""
    contents = {
        "user-data": user_data,
        "meta-data": meta_data,
        "network-config": network_config,
    }

    iso = pycdlib.PyCdlib()
    iso.new(interchange_level=3, joliet=3, rock_ridge="1.09", vol_ident=SEED_VOLUME_LABEL)
    try:
        for name, iso_path in _SEED_FILES.items():
            data = contents[name].encode("utf-8")
            iso.add_fp(io.BytesIO(data), len(data), iso_path, rr_name=name, joliet_path=f"/{name}")
        iso.write(str(path))
    finally:
        iso.close()
    return path
