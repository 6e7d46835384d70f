"""Tracking of asynchronous Proxmox tasks.

Proxmox reports long operations as tasks identified by a UPID such as
``UPID:pve1:0000A1B2:00C0FFEE:6700AB12:qmcreate:101:root@pam:``. A task is
``running`` until it is ``stopped``; a stopped task succeeded only when its
exit status is ``OK``.
"""

import structlog

from .cancellation import CancelToken
from .errors import TaskFailedError
from .models import TaskState, TaskStatus
from .proxmox_api import ProxmoxClient
from .steps import StepResult

logger = structlog.get_logger(__name__)

RUNNING = "running"
EXIT_OK = "OK"

# Delay before re-polling a task that is still running
POLL_RETRY_SECONDS = 10.0


def upid_node(upid: str) -> str:
    """Return the node a task runs on, taken from its UPID."""
    parts = upid.strip().split(":")
    if len(parts) < 3 or parts[0] != "UPID" or not parts[1]:
        raise ValueError(f"malformed task id {upid!r}")
    return parts[1]


def reduce_status(raw: dict) -> TaskStatus:
    """Reduce a raw task status payload to running/succeeded/failed."""
    status = str(raw.get("status", ""))
    exit_status = str(raw.get("exitstatus") or "")
    if status == RUNNING:
        return TaskStatus(TaskState.RUNNING, status)
    if exit_status == EXIT_OK:
        return TaskStatus(TaskState.SUCCEEDED, status, exit_status)
    return TaskStatus(TaskState.FAILED, status, exit_status)


class TaskTracker:
    """Polls Proxmox tasks; one status request per ``poll`` call."""

    def __init__(self, client: ProxmoxClient) -> None:
        self.client = client

    def poll(self, upid: str, cancel: CancelToken | None = None) -> TaskStatus:
        if cancel is not None:
            cancel.raise_if_cancelled()
        return reduce_status(self.client.task_status(upid_node(upid), upid))

    def is_done(self, upid: str, cancel: CancelToken | None = None) -> bool:
        """True once the task succeeded, False while it runs.

        Raises:
            TaskFailedError: If the task finished unsuccessfully
        """
        status = self.poll(upid, cancel)
        if status.is_running:
            return False
        if status.is_successful:
            return True
        logger.warning(
            "task failed", task=upid, status=status.status, exit_status=status.exit_status
        )
        raise TaskFailedError(status.status, status.exit_status)

    def step_result(
        self, upid: str, retry_after: float = POLL_RETRY_SECONDS, cancel: CancelToken | None = None
    ) -> StepResult:
        """Map a poll to the step contract: retry while running, else continue.

        Raises:
            TaskFailedError: If the task finished unsuccessfully
        """
        if self.is_done(upid, cancel):
            return StepResult.proceed()
        return StepResult.retry_after(retry_after)

    def wait(self, upid: str, cancel: CancelToken, interval: float = 5.0) -> None:
        """Block until the task finishes, polling every ``interval`` seconds.

        Only deprovisioning uses this; provisioning steps return a retry
        signal instead of waiting.

        Raises:
            TaskFailedError: If the task finished unsuccessfully
            OperationCancelled: If ``cancel`` fires while waiting
        """
        while True:
            cancel.sleep(interval)
            if self.is_done(upid, cancel):
                return
