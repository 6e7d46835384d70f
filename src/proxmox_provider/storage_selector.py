"""Storage pool selection driven by selector expressions."""

from typing import Callable

import structlog

from .cancellation import CancelToken
from .errors import NoStorageMatchError
from .models import StoragePool
from .proxmox_api import ProxmoxClient
from .selector_expr import Predicate, Schema, ValueType, parse

logger = structlog.get_logger(__name__)

STORAGE_SCHEMA: Schema = {
    "name": ValueType.STRING,
    "node": ValueType.STRING,
    "storageType": ValueType.STRING,
    "availableSpace": ValueType.UINT,
}

Parser = Callable[[str, Schema], Predicate]


def storage_bindings(pool: StoragePool) -> dict[str, object]:
    """Variables a selector sees for one storage pool."""
    return {
        "name": pool.name,
        "node": pool.node,
        "storageType": pool.type,
        "availableSpace": pool.available,
    }


def first_match(predicate: Predicate, pools: list[StoragePool]) -> StoragePool | None:
    """First pool satisfying the predicate; evaluation errors propagate."""
    for pool in pools:
        if predicate.evaluate(storage_bindings(pool)):
            return pool
    return None


class StorageSelector:
    """Picks the storage pool a disk is created on."""

    def __init__(self, client: ProxmoxClient, parser: Parser = parse) -> None:
        self.client = client
        self.parser = parser

    def pick(self, node: str, expression: str, cancel: CancelToken | None = None) -> str:
        """Return the name of the first pool on ``node`` matching ``expression``.

        Raises:
            SelectorSyntaxError: If the expression does not parse
            SelectorEvaluationError: If evaluating a candidate fails
            NoStorageMatchError: If no pool matches
        """
        predicate = self.parser(expression, STORAGE_SCHEMA)
        if cancel is not None:
            cancel.raise_if_cancelled()

        match = first_match(predicate, self.client.list_storages(node))
        if match is None:
            raise NoStorageMatchError(expression)

        logger.debug("picked storage", node=node, storage=match.name, selector=expression)
        return match.name
