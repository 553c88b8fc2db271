"""
Entity store port: JSON documents keyed by (collection, id), each with a version.

- update(): single-document write guarded by field preconditions (status compare-and-set).
- run_transaction(): optimistic multi-document unit of work. Reads record versions, commit
  checks them, conflicts re-run the callback up to `max_attempts` times.
"""
import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import TypeVar

from fulfillment.config import settings
from fulfillment.errors import ConcurrentModification, NotFound, PreconditionFailed, TransactionAborted

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Collection name -> entity label used in NotFound message keys
ENTITY_LABELS = {
    "orders": "order",
    "event_bookings": "booking",
    "boxes": "box",
    "users": "user",
    "roles": "role",
    "event_resources": "resource",
}


def entity_label(collection: str) -> str:
    return ENTITY_LABELS.get(collection, collection)


def check_expected(collection: str, doc_id: str, body: dict, expected: dict | None) -> None:
    """Raise PreconditionFailed if any expected field differs from the stored document."""
    for field, value in (expected or {}).items():
        if body.get(field) != value:
            raise PreconditionFailed(
                f"{entity_label(collection)} {doc_id}: expected {field}={value!r}, found {body.get(field)!r}"
            )


def apply_changes(body: dict, fields: dict | None, append: dict | None) -> dict:
    """Set top-level fields and extend list fields. Returns the mutated body."""
    for key, value in (fields or {}).items():
        body[key] = copy.deepcopy(value)
    for key, items in (append or {}).items():
        body.setdefault(key, [])
        body[key] = list(body[key] or []) + copy.deepcopy(list(items))
    return body


class Transaction(ABC):
    """Unit of work handed to run_transaction callbacks. Writes are staged until commit."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> dict | None:
        ...

    @abstractmethod
    def update(self, collection: str, doc_id: str, fields: dict, append: dict | None = None) -> None:
        ...

    @abstractmethod
    def increment(self, collection: str, doc_id: str, field: str, key: str, delta: int) -> None:
        """Stage body[field][key] += delta."""
        ...


class EntityStore(ABC):
    def __init__(self, max_attempts: int | None = None):
        self.max_attempts = max_attempts or settings.transaction_max_attempts

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> dict | None:
        ...

    @abstractmethod
    async def insert(self, collection: str, doc_id: str, body: dict) -> bool:
        """Create the document if absent. Returns False when it already existed."""
        ...

    @abstractmethod
    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict,
        append: dict | None = None,
        expected: dict | None = None,
    ) -> dict:
        """Apply fields (and list appends) if `expected` still holds. Returns the new body."""
        ...

    @abstractmethod
    async def _begin(self) -> "Transaction":
        ...

    @abstractmethod
    async def _commit(self, tx: "Transaction") -> None:
        """Raise ConcurrentModification if any document read by tx changed since."""
        ...

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            tx = await self._begin()
            result = await fn(tx)
            try:
                await self._commit(tx)
                return result
            except ConcurrentModification:
                logger.info("Transaction conflict (attempt %d/%d), retrying", attempt, self.max_attempts)
        raise TransactionAborted(self.max_attempts)


class InMemoryTransaction(Transaction):
    def __init__(self, store: "InMemoryEntityStore"):
        self._store = store
        self.read_versions: dict[tuple[str, str], int] = {}
        self.ops: list[tuple] = []

    async def get(self, collection: str, doc_id: str) -> dict | None:
        entry = self._store._docs.get((collection, doc_id))
        self.read_versions[(collection, doc_id)] = entry[0] if entry else 0
        return copy.deepcopy(entry[1]) if entry else None

    def update(self, collection: str, doc_id: str, fields: dict, append: dict | None = None) -> None:
        self.ops.append(("update", collection, doc_id, fields, append))

    def increment(self, collection: str, doc_id: str, field: str, key: str, delta: int) -> None:
        self.ops.append(("increment", collection, doc_id, field, key, delta))


class InMemoryEntityStore(EntityStore):
    """Process-local store. Used by tests and single-process runs."""

    def __init__(self, max_attempts: int | None = None):
        super().__init__(max_attempts)
        self._docs: dict[tuple[str, str], tuple[int, dict]] = {}
        self._lock = asyncio.Lock()

    async def get(self, collection: str, doc_id: str) -> dict | None:
        async with self._lock:
            entry = self._docs.get((collection, doc_id))
            return copy.deepcopy(entry[1]) if entry else None

    async def insert(self, collection: str, doc_id: str, body: dict) -> bool:
        async with self._lock:
            if (collection, doc_id) in self._docs:
                return False
            self._docs[(collection, doc_id)] = (1, copy.deepcopy(body))
            return True

    async def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict,
        append: dict | None = None,
        expected: dict | None = None,
    ) -> dict:
        async with self._lock:
            entry = self._docs.get((collection, doc_id))
            if entry is None:
                raise NotFound(entity_label(collection), doc_id)
            version, body = entry
            check_expected(collection, doc_id, body, expected)
            body = apply_changes(copy.deepcopy(body), fields, append)
            self._docs[(collection, doc_id)] = (version + 1, body)
            return copy.deepcopy(body)

    async def _begin(self) -> InMemoryTransaction:
        return InMemoryTransaction(self)

    async def _commit(self, tx: InMemoryTransaction) -> None:
        async with self._lock:
            for key, version in tx.read_versions.items():
                entry = self._docs.get(key)
                if (entry[0] if entry else 0) != version:
                    raise ConcurrentModification(f"{key[0]}/{key[1]}")
            staged: dict[tuple[str, str], dict] = {}
            for op in tx.ops:
                key = (op[1], op[2])
                if key not in staged:
                    entry = self._docs.get(key)
                    if entry is None:
                        raise NotFound(entity_label(op[1]), op[2])
                    staged[key] = copy.deepcopy(entry[1])
                if op[0] == "update":
                    apply_changes(staged[key], op[3], op[4])
                else:
                    _, _, _, field, item, delta = op
                    bucket = staged[key].setdefault(field, {})
                    bucket[item] = bucket.get(item, 0) + delta
            for key, body in staged.items():
                self._docs[key] = (self._docs[key][0] + 1, body)
