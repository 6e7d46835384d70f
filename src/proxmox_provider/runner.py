"""Local driver for the provisioning pipeline.

Omni normally invokes the steps and persists the state. The runner plays
that role from the command line: the state lives in a YAML file and retry
delays are slept out on the cancel token.
"""

import os
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from .cancellation import CancelToken
from .errors import MachineConfigError, ProviderError
from .image_factory import ImageFactoryClient
from .models import MachineConfig, ProvisioningState
from .steps import Outcome, ProvisionContext, Step

logger = structlog.get_logger(__name__)


class StateStore:
    """Provisioning state persisted as a YAML file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> ProvisioningState:
        """Load the state; a missing file means nothing was provisioned yet."""
        if not self.path.exists():
            return ProvisioningState()
        with open(self.path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"state file {self.path} does not contain a mapping")
        return ProvisioningState.from_dict(data)

    def save(self, state: ProvisioningState) -> None:
        # write then rename so an interrupted save never truncates the state
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w") as f:
            yaml.safe_dump(state.to_dict(), f, sort_keys=False)
        os.replace(tmp, self.path)

    def delete(self) -> None:
        self.path.unlink(missing_ok=True)


def load_machine_config(path: Path) -> dict[str, Any]:
    """Read raw provider data from a YAML file."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise MachineConfigError(f"machine config {path} is not a mapping")
    return data


class LocalContext(ProvisionContext):
    """ProvisionContext for running the pipeline outside Omni."""

    def __init__(
        self,
        request_id: str,
        provider_data: dict[str, Any],
        state: ProvisioningState,
        factory: ImageFactoryClient,
        talos_version: str,
        join_config: str = "",
        request_set_id: str | None = None,
    ) -> None:
        self._request_id = request_id
        self._request_set_id = request_set_id
        self._talos_version = talos_version
        self._join_config = join_config
        self.provider_data = provider_data
        self.factory = factory
        self.state = state
        self.machine_uuid = state.uuid

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
        try:
            return MachineConfig.model_validate(self.provider_data)
        except ValidationError as e:
            raise MachineConfigError(f"failed to decode machine config: {e}") from e

    def generate_schematic_id(self, extensions: list[str]) -> str:
        return self.factory.create_schematic(extensions)

    def set_machine_uuid(self, uuid: str) -> None:
        self.machine_uuid = uuid
        logger.info("machine UUID assigned", request_id=self.request_id, uuid=uuid)


class PipelineRunner:
    """Runs steps in order until each one continues."""

    def __init__(self, steps: list[Step], store: StateStore, max_attempts: int = 720) -> None:
        self.steps = steps
        self.store = store
        self.max_attempts = max_attempts

    def run(self, ctx: ProvisionContext, cancel: CancelToken) -> None:
        """Drive every step to completion.

        The state is saved after each invocation, including failed ones, so
        a later run resumes where this one stopped.

        Raises:
            ProviderError: If a step fails or keeps asking for a retry
            OperationCancelled: If ``cancel`` fires
        """
        for step in self.steps:
            attempts = 0
            while True:
                attempts += 1
                result = step.run(ctx, cancel)
                self.store.save(ctx.state)

                if result.outcome == Outcome.CONTINUE:
                    logger.info("step finished", step=step.name, attempts=attempts)
                    break
                if result.outcome in (Outcome.FAIL, Outcome.CANCELLED):
                    raise result.error or ProviderError(f"step {step.name} failed")
                if attempts >= self.max_attempts:
                    raise ProviderError(f"step {step.name} did not finish after {attempts} attempts")

                logger.debug("step asked for a retry", step=step.name, delay=result.delay)
                cancel.sleep(result.delay)
