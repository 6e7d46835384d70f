"""Step plumbing shared by the provisioning pipeline and its drivers.

A step body returns ``StepResult.proceed()`` or ``StepResult.retry_after()``
and raises ``ProviderError`` for terminal failures. ``Step.run`` folds the
raised errors into the result so the orchestrator sees a single return value.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import structlog

from .cancellation import CancelToken
from .errors import OperationCancelled
from .models import MachineConfig, ProvisioningState

logger = structlog.get_logger(__name__)


class Outcome(Enum):
    """How the orchestrator should continue after a step invocation."""

    CONTINUE = "continue"
    RETRY_AFTER = "retry_after"
    FAIL = "fail"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class StepResult:
    """Tagged result of a step invocation."""

    outcome: Outcome
    delay: float = 0.0
    error: Exception | None = None

    @classmethod
    def proceed(cls) -> "StepResult":
        return cls(Outcome.CONTINUE)

    @classmethod
    def retry_after(cls, seconds: float) -> "StepResult":
        return cls(Outcome.RETRY_AFTER, delay=seconds)

    @classmethod
    def fail(cls, error: Exception) -> "StepResult":
        return cls(Outcome.FAIL, error=error)

    @classmethod
    def cancelled(cls, error: OperationCancelled) -> "StepResult":
        return cls(Outcome.CANCELLED, error=error)

    @property
    def is_done(self) -> bool:
        return self.outcome == Outcome.CONTINUE

    @property
    def should_retry(self) -> bool:
        return self.outcome == Outcome.RETRY_AFTER


class ProvisionContext(ABC):
    """Orchestrator-side view of one machine request.

    ``state`` is the durable record; the orchestrator persists it after every
    step invocation and hands the same record back on the next one.
    """

    state: ProvisioningState

    @property
    @abstractmethod
    def request_id(self) -> str:
        """Machine request id, used as the VM name."""

    @property
    @abstractmethod
    def request_set_id(self) -> str | None:
        """Machine request set the request belongs to, if any."""

    @property
    @abstractmethod
    def talos_version(self) -> str:
        """Talos version the orchestrator currently wants."""

    @property
    @abstractmethod
    def join_config(self) -> str:
        """Machine config that joins the new node to its cluster."""

    @abstractmethod
    def machine_config(self) -> MachineConfig:
        """Decode the request's provider data."""

    @abstractmethod
    def generate_schematic_id(self, extensions: list[str]) -> str:
        """Create (or look up) the image schematic for this request."""

    @abstractmethod
    def set_machine_uuid(self, uuid: str) -> None:
        """Record the machine UUID the VM will report."""


StepFunc = Callable[[ProvisionContext, CancelToken], StepResult]


@dataclass(frozen=True)
class Step:
    """Named, independently resumable provisioning step."""

    name: str
    func: StepFunc

    def run(self, ctx: ProvisionContext, cancel: CancelToken) -> StepResult:
        log = logger.bind(step=self.name, request_id=ctx.request_id)
        try:
            cancel.raise_if_cancelled()
            return self.func(ctx, cancel)
        except OperationCancelled as e:
            log.info("step cancelled", reason=e.reason)
            return StepResult.cancelled(e)
        except Exception as e:
            log.error("step failed", error=str(e), error_type=type(e).__name__)
            return StepResult.fail(e)
