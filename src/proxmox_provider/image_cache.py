"""Content-addressed caching of Talos boot ISOs on Proxmox storage."""

import hashlib

import structlog

from .cancellation import CancelToken
from .errors import TaskFailedError
from .models import ProvisioningState
from .proxmox_api import ProxmoxClient
from .steps import StepResult
from .tasks import TaskTracker

logger = structlog.get_logger(__name__)

IMAGE_KIND = "nocloud-amd64.iso"
ISO_EXTENSION = ".iso"
# Task status that makes a finished download eligible for a fresh attempt
RESTARTABLE_STATUS = "stopped"
DOWNLOAD_STARTED_RETRY_SECONDS = 1.0


def image_url(factory_url: str, schematic: str, talos_version: str) -> str:
    """Image factory URL of the ISO for a schematic and Talos version."""
    return "/".join([factory_url.rstrip("/"), "image", schematic, talos_version, IMAGE_KIND])


def image_volume_name(url: str) -> str:
    """Stable ISO file name: hex SHA-256 of the source URL plus ``.iso``."""
    return hashlib.sha256(url.encode("utf-8")).hexdigest() + ISO_EXTENSION


class ImageCache:
    """Makes sure the boot ISO is present in the chosen node's ISO storage."""

    def __init__(self, client: ProxmoxClient, tasks: TaskTracker, factory_url: str) -> None:
        self.client = client
        self.tasks = tasks
        self.factory_url = factory_url

    def ensure(self, state: ProvisioningState, talos_version: str, cancel: CancelToken) -> StepResult:
        """Continue once the ISO is cached; retry while a download runs.

        Raises:
            TaskFailedError: If a previous download failed for a reason other
                than being stopped
        """
        if state.volume_upload_task:
            try:
                return self.tasks.step_result(state.volume_upload_task, cancel=cancel)
            except TaskFailedError as e:
                if e.status != RESTARTABLE_STATUS:
                    raise
                logger.info("retrying download", task=state.volume_upload_task, exit_status=e.exit_status)
                state.volume_upload_task = ""

        if not state.talos_version:
            state.talos_version = talos_version

        url = image_url(self.factory_url, state.schematic, state.talos_version)
        iso_name = image_volume_name(url)
        state.volume_id = iso_name

        cancel.raise_if_cancelled()
        storage = self.client.iso_storage(state.node)
        cancel.raise_if_cancelled()
        if self.client.find_iso(state.node, storage.name, iso_name) is not None:
            logger.debug("ISO image already cached", volume_id=iso_name, storage=storage.name)
            return StepResult.proceed()

        cancel.raise_if_cancelled()
        task = self.client.download_url(state.node, storage.name, iso_name, url)
        logger.info("uploading new ISO image", volume_id=iso_name, task=task, url=url)
        state.volume_upload_task = task
        return StepResult.retry_after(DOWNLOAD_STARTED_RETRY_SECONDS)
