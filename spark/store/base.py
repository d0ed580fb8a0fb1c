"""
SPARK — Document store contract

The engine talks to persistence exclusively through ``DocumentStore``: keyed
JSON documents grouped into collections, with filtered queries, atomic write
batches and single-document conditional updates.  Two implementations ship
with the project:

* ``SqlDocumentStore`` — PostgreSQL (JSONB) through SQLAlchemy's async engine.
* ``MemoryDocumentStore`` — process-local, used by tests and local runs.

Every document carries a monotonically increasing ``version``; writers that
need read-modify-write atomicity go through ``atomic_update`` which retries a
version compare-and-set until it wins or runs out of attempts.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from spark.errors import ConcurrentUpdateError

logger = structlog.get_logger("spark.store")

USERS = "users"
PREFERENCES = "preferences"
MATCHES = "matches"
ROOMS = "rooms"
MESSAGES = "messages"
ROOMS_ARCHIVE = "rooms_archive"

MAX_BATCH_WRITES = 500

FILTER_OPS = frozenset({"==", "!=", "<", "<=", ">", ">=", "in", "array_contains"})

T = TypeVar("T")


@dataclass(frozen=True)
class Document:
    id: str
    data: dict[str, Any]
    version: int


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.value is None:
            raise ValueError("Filters cannot compare against None")
        if self.op not in FILTER_OPS:
            raise ValueError(f"Unsupported filter operator {self.op!r}")
        if self.op == "in" and not isinstance(self.value, (list, tuple, set, frozenset)):
            raise ValueError("'in' filters need a collection value")


@dataclass(frozen=True)
class OrderBy:
    field: str
    descending: bool = False


@dataclass
class WriteBatch:
    """Collects writes to be committed atomically by ``DocumentStore.commit``."""

    operations: list[tuple[str, str, str, Optional[dict[str, Any]]]] = field(
        default_factory=list
    )

    def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._check_room()
        self.operations.append(("set", collection, doc_id, data))

    def delete(self, collection: str, doc_id: str) -> None:
        self._check_room()
        self.operations.append(("delete", collection, doc_id, None))

    def __len__(self) -> int:
        return len(self.operations)

    def _check_room(self) -> None:
        if len(self.operations) >= MAX_BATCH_WRITES:
            raise ValueError(f"A write batch holds at most {MAX_BATCH_WRITES} writes")


class DocumentStore(abc.ABC):
    """Abstract keyed-document store."""

    @abc.abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        ...

    @abc.abstractmethod
    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        """Create or overwrite a document (bumps its version)."""

    @abc.abstractmethod
    async def create_if_absent(
        self, collection: str, doc_id: str, data: dict[str, Any]
    ) -> bool:
        """Create the document only if the id is unused; True when created."""

    @abc.abstractmethod
    async def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        expected_version: int,
        data: dict[str, Any],
    ) -> bool:
        """Replace the document only if it is still at ``expected_version``."""

    @abc.abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        ...

    @abc.abstractmethod
    async def query(
        self,
        collection: str,
        filters: list[Filter] | None = None,
        order_by: list[OrderBy] | None = None,
        limit: int | None = None,
    ) -> list[Document]:
        """Return documents matching every filter.

        Range and equality filters never match documents that lack the field.
        """

    @abc.abstractmethod
    async def commit(self, batch: WriteBatch) -> None:
        """Apply every write in ``batch`` atomically."""

    async def get_many(self, collection: str, doc_ids: list[str]) -> dict[str, Document]:
        found: dict[str, Document] = {}
        for doc_id in dict.fromkeys(doc_ids):
            doc = await self.get(collection, doc_id)
            if doc is not None:
                found[doc_id] = doc
        return found

    def batch(self) -> WriteBatch:
        return WriteBatch()

    async def close(self) -> None:
        return None


class _VersionConflict(Exception):
    """Another writer bumped the document between our read and our write."""


async def atomic_update(
    store: DocumentStore,
    collection: str,
    doc_id: str,
    mutate: Callable[[Document], tuple[Optional[dict[str, Any]], T]],
    *,
    max_attempts: int = 5,
) -> tuple[Optional[Document], T]:
    """Run a read-check-write against one document as a compare-and-set loop.

    ``mutate`` receives the current document and returns ``(new_data, result)``.
    Returning ``None`` as ``new_data`` means "nothing to write"; the loop stops
    and ``result`` is returned as-is.  When the document does not exist the
    mutator is not called and ``(None, None)`` is returned.  Exceptions raised
    by ``mutate`` propagate immediately and are never retried.

    Raises ``ConcurrentUpdateError`` when every attempt lost to another writer.
    """
    try:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(_VersionConflict),
            stop=stop_after_attempt(max_attempts),
            wait=wait_random_exponential(multiplier=0.01, max=0.2),
            reraise=True,
        ):
            with attempt:
                current = await store.get(collection, doc_id)
                if current is None:
                    return None, None  # type: ignore[return-value]

                new_data, result = mutate(current)
                if new_data is None:
                    return current, result

                if not await store.compare_and_set(
                    collection, doc_id, current.version, new_data
                ):
                    logger.debug(
                        "cas_conflict",
                        collection=collection,
                        doc_id=doc_id,
                        attempt=attempt.retry_state.attempt_number,
                    )
                    raise _VersionConflict()

                return Document(id=doc_id, data=new_data, version=current.version + 1), result
    except _VersionConflict:
        logger.warning(
            "cas_attempts_exhausted",
            collection=collection,
            doc_id=doc_id,
            attempts=max_attempts,
        )
        raise ConcurrentUpdateError(
            f"Concurrent updates on {collection}/{doc_id}; retry the request"
        ) from None
