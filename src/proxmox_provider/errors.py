"""Exception hierarchy for the provisioning pipeline.

Retry-later is never an exception: steps return a ``StepResult`` for that.
Everything here is terminal for the step that raised it, except
``ResourceNotFoundError``, which deprovisioning maps to success.
"""


class ProviderError(Exception):
    """Base class for provisioning failures."""


class RequestValidationError(ProviderError):
    """The machine request cannot be satisfied as declared."""


class MachineConfigError(RequestValidationError):
    """Provider data could not be decoded into a machine config."""


class NoNodesAvailableError(RequestValidationError):
    """The cluster reported no usable nodes."""

    def __init__(self, message: str = "no nodes available") -> None:
        super().__init__(message)


class NodeSelectionError(RequestValidationError):
    """An explicitly requested node is missing or not online."""

    def __init__(self, node: str, message: str) -> None:
        super().__init__(message)
        self.node = node


class SelectorSyntaxError(RequestValidationError):
    """A storage selector expression failed to parse or type-check."""

    def __init__(self, expression: str, message: str) -> None:
        super().__init__(f"invalid storage selector {expression!r}: {message}")
        self.expression = expression


class SelectorEvaluationError(RequestValidationError):
    """A storage selector failed while evaluating against a candidate."""


class NoStorageMatchError(RequestValidationError):
    """No storage pool on the node satisfied the selector."""

    def __init__(self, expression: str) -> None:
        super().__init__(f'failed to pick the disk: no matches for the condition "{expression}"')
        self.expression = expression


class TaskFailedError(ProviderError):
    """A Proxmox task finished without success."""

    def __init__(self, status: str, exit_status: str = "") -> None:
        message = status if not exit_status else f"{status} (exit status: {exit_status})"
        super().__init__(message)
        self.status = status
        self.exit_status = exit_status


class ResourceNotFoundError(ProviderError):
    """A VM or volume does not exist on the cluster."""


class InconsistentStateError(ProviderError):
    """The persisted provisioning state contradicts itself."""


class OperationCancelled(Exception):
    """The caller cancelled the operation; not an operational fault."""

    def __init__(self, reason: str = "cancelled") -> None:
        super().__init__(reason)
        self.reason = reason
