"""Provisioning pipeline and teardown for Talos VMs on Proxmox.

Each step reads and writes ``ctx.state``, the record the orchestrator
persists between invocations. A step that started a Proxmox task records the
task id and returns a retry signal; the next invocation polls that task
instead of starting the operation again, so any step can be re-run after a
crash or restart.
"""

import tempfile
import uuid
from pathlib import Path

import structlog

from .cancellation import CancelToken
from .cloud_init import build_meta_data, build_seed_iso, build_user_data, seed_iso_name
from .errors import InconsistentStateError, RequestValidationError, ResourceNotFoundError
from .image_cache import ImageCache
from .models import ProvisioningState
from .node_selector import NodeSelector
from .proxmox_api import ProxmoxClient
from .steps import ProvisionContext, Step, StepResult
from .storage_selector import StorageSelector
from .tasks import TaskTracker
from .vm_spec import build_vm_options

logger = structlog.get_logger(__name__)

DEFAULT_IMAGE_FACTORY_URL = "https://factory.talos.dev"
GUEST_AGENT_EXTENSION = "siderolabs/qemu-guest-agent"
CLOUD_INIT_DEVICE = "ide0"

VM_CREATE_RETRY_SECONDS = 10.0
VM_START_RETRY_SECONDS = 1.0
SEED_UPLOAD_RETRY_SECONDS = 1.0


class Provisioner:
    """Produces the provisioning steps and tears VMs down again."""

    def __init__(
        self,
        client: ProxmoxClient,
        factory_url: str = DEFAULT_IMAGE_FACTORY_URL,
        deprovision_poll_interval: float = 5.0,
    ) -> None:
        self.client = client
        self.tasks = TaskTracker(client)
        self.nodes = NodeSelector(client)
        self.storage = StorageSelector(client)
        self.images = ImageCache(client, self.tasks, factory_url)
        self.deprovision_poll_interval = deprovision_poll_interval

    def provision_steps(self) -> list[Step]:
        """Steps in the order they must run."""
        return [
            Step("pickNode", self.pick_node),
            Step("createSchematic", self.create_schematic),
            Step("uploadISO", self.upload_iso),
            Step("syncVM", self.sync_vm),
            Step("startVM", self.start_vm),
        ]

    # === STEPS ===

    def pick_node(self, ctx: ProvisionContext, cancel: CancelToken) -> StepResult:
        if ctx.state.node:
            return StepResult.proceed()

        config = ctx.machine_config()
        ctx.state.node = self.nodes.select(config.node, ctx.request_set_id, cancel)
        return StepResult.proceed()

    def create_schematic(self, ctx: ProvisionContext, cancel: CancelToken) -> StepResult:
        if ctx.state.schematic:
            return StepResult.proceed()

        # the ISO carries the full join config, so the schematic only adds the guest agent
        ctx.state.schematic = ctx.generate_schematic_id([GUEST_AGENT_EXTENSION])
        return StepResult.proceed()

    def upload_iso(self, ctx: ProvisionContext, cancel: CancelToken) -> StepResult:
        state = ctx.state
        if not state.node or not state.schematic:
            raise InconsistentStateError("uploadISO needs the node and schematic to be set")
        return self.images.ensure(state, ctx.talos_version, cancel)

    def sync_vm(self, ctx: ProvisionContext, cancel: CancelToken) -> StepResult:
        state = ctx.state
        if state.vm_create_task:
            return self.tasks.step_result(state.vm_create_task, cancel=cancel)

        if not state.node or not state.volume_id:
            raise InconsistentStateError("syncVM needs the node and volume id to be set")

        if not state.uuid:
            state.uuid = str(uuid.uuid4())
            ctx.set_machine_uuid(state.uuid)

        config = ctx.machine_config()
        node = state.node

        cancel.raise_if_cancelled()
        vmid = self.client.next_vmid()

        cancel.raise_if_cancelled()
        iso_storage = self.client.iso_storage(node)
        iso_volume = self.client.find_iso(node, iso_storage.name, state.volume_id)
        if iso_volume is None:
            raise ResourceNotFoundError(f"ISO {state.volume_id} not found in storage {iso_storage.name!r}")

        storage = self.storage.pick(node, config.storage_selector, cancel)
        additional_storages = []
        for index, disk in enumerate(config.additional_disks, start=1):
            try:
                additional_storages.append(self.storage.pick(node, disk.storage_selector, cancel))
            except RequestValidationError as e:
                raise RequestValidationError(f"failed to pick storage for additional disk {index}: {e}") from e

        options = build_vm_options(
            config,
            uuid=state.uuid,
            name=ctx.request_id,
            iso_volume=iso_volume,
            storage=storage,
            additional_storages=additional_storages,
            request_set_id=ctx.request_set_id,
        )

        cancel.raise_if_cancelled()
        task = self.client.create_vm(node, vmid, options)
        logger.info("creating VM", node=node, vmid=vmid, task=task, storage=storage)

        state.vm_create_task = task
        state.vmid = vmid
        return StepResult.retry_after(VM_CREATE_RETRY_SECONDS)

    def start_vm(self, ctx: ProvisionContext, cancel: CancelToken) -> StepResult:
        state = ctx.state
        if state.vm_start_task:
            return self.tasks.step_result(state.vm_start_task, cancel=cancel)

        if not state.node or not state.vmid:
            raise InconsistentStateError("startVM needs the node and vmid to be set")

        cancel.raise_if_cancelled()
        self.client.vm_status(state.node, state.vmid)
        iso_storage = self.client.iso_storage(state.node)

        if not state.cloud_init_task:
            state.cloud_init_task = self._upload_seed(ctx, iso_storage.name, cancel)
            return StepResult.retry_after(SEED_UPLOAD_RETRY_SECONDS)

        seed = self.tasks.step_result(state.cloud_init_task, SEED_UPLOAD_RETRY_SECONDS, cancel)
        if not seed.is_done:
            return seed

        cancel.raise_if_cancelled()
        self.client.set_vm_config(
            state.node,
            state.vmid,
            **{CLOUD_INIT_DEVICE: f"{iso_storage.name}:iso/{seed_iso_name(state.vmid)},media=cdrom"},
        )
        task = self.client.start_vm(state.node, state.vmid)
        logger.info("starting VM", node=state.node, vmid=state.vmid, task=task)

        state.vm_start_task = task
        return StepResult.retry_after(VM_START_RETRY_SECONDS)

    def _upload_seed(self, ctx: ProvisionContext, storage: str, cancel: CancelToken) -> str:
        """Build the NoCloud seed ISO for the VM and upload it; returns the task id."""
        state = ctx.state
        iso_name = seed_iso_name(state.vmid)
        user_data = build_user_data(ctx.join_config, state.talos_version or ctx.talos_version, ctx.request_id)
        meta_data = build_meta_data(state.uuid, ctx.request_id)

        # a seed left behind by an earlier VM with the same id would block the upload
        stale = self.client.find_iso(state.node, storage, iso_name)
        if stale is not None:
            logger.info("removing stale cloud-init seed", volume=stale)
            self.client.delete_volume(state.node, storage, stale)

        cancel.raise_if_cancelled()
        with tempfile.TemporaryDirectory(prefix="proxmox-seed-") as tmp:
            path = build_seed_iso(Path(tmp) / iso_name, user_data, meta_data)
            task = self.client.upload_iso(state.node, storage, path)

        logger.info("uploaded cloud-init seed", node=state.node, vmid=state.vmid, task=task)
        return task

    # === TEARDOWN ===

    def deprovision(self, state: ProvisioningState, request_id: str, cancel: CancelToken) -> None:
        """Stop and delete the VM recorded in ``state``; safe to call repeatedly.

        Raises:
            InconsistentStateError: If a vmid is recorded without a node
            TaskFailedError: If stopping or deleting the VM fails
            OperationCancelled: If ``cancel`` fires while waiting
        """
        log = logger.bind(request_id=request_id, node=state.node, vmid=state.vmid)
        if state.vmid == 0:
            log.debug("no VM was created, nothing to remove")
            return

        if not state.node:
            raise InconsistentStateError("VM is missing the node information")

        cancel.raise_if_cancelled()
        try:
            self.client.vm_status(state.node, state.vmid)
        except ResourceNotFoundError:
            log.info("VM already removed")
            return

        cancel.raise_if_cancelled()
        task = self.client.stop_vm(state.node, state.vmid)
        log.info("stopping VM", task=task)
        self.tasks.wait(task, cancel, self.deprovision_poll_interval)

        cancel.raise_if_cancelled()
        task = self.client.delete_vm(state.node, state.vmid)
        log.info("deleting VM", task=task)
        self.tasks.wait(task, cancel, self.deprovision_poll_interval)

        log.info("VM removed")
