"""Client for the Talos image factory schematic API."""

from typing import Any

import requests
import structlog
import yaml

logger = structlog.get_logger(__name__)


class ImageFactoryClient:
    """Registers image customizations and returns their schematic ids."""

    def __init__(self, base_url: str, timeout: int = 30, session: requests.Session | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @staticmethod
    def customization(extensions: list[str], extra_kernel_args: list[str] | None = None) -> dict[str, Any]:
        """Schematic document for the given official extensions and kernel args."""
        customization: dict[str, Any] = {}
        if extra_kernel_args:
            customization["extraKernelArgs"] = list(extra_kernel_args)
        if extensions:
            customization["systemExtensions"] = {"officialExtensions": sorted(set(extensions))}
        return {"customization": customization}

    def create_schematic(self, extensions: list[str], extra_kernel_args: list[str] | None = None) -> str:
        """Post a schematic and return its id.

        The factory answers with the same id for identical documents, so the
        call is idempotent.

        Raises:
            requests.HTTPError: If the factory rejects the schematic
        """
        body = yaml.safe_dump(self.customization(extensions, extra_kernel_args), sort_keys=True)
        response = self.session.post(
            f"{self.base_url}/schematics",
            data=body.encode("utf-8"),
            headers={"Content-Type": "application/yaml"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        schematic_id = str(response.json()["id"])
        logger.info("generated image schematic", schematic=schematic_id, extensions=extensions)
        return schematic_id
