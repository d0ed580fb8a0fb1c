"""In-process ``DocumentStore`` used by the test-suite and local development."""

from __future__ import annotations

import copy
from typing import Any, Optional

from spark.store.base import Document, DocumentStore, Filter, OrderBy, WriteBatch

_MISSING = object()


def _matches(data: dict[str, Any], flt: Filter) -> bool:
    actual = data.get(flt.field, _MISSING)
    if actual is _MISSING or actual is None:
        return False

    if flt.op == "==":
        return actual == flt.value
    if flt.op == "!=":
        return actual != flt.value
    if flt.op == "in":
        return actual in flt.value
    if flt.op == "array_contains":
        return isinstance(actual, list) and flt.value in actual

    # Range operators only compare values of the same kind, like the SQL backend.
    if isinstance(actual, bool) or isinstance(flt.value, bool):
        return False
    numeric = (int, float)
    if isinstance(actual, numeric) != isinstance(flt.value, numeric):
        return False
    if flt.op == "<":
        return actual < flt.value
    if flt.op == "<=":
        return actual <= flt.value
    if flt.op == ">":
        return actual > flt.value
    if flt.op == ">=":
        return actual >= flt.value
    return False


class MemoryDocumentStore(DocumentStore):
    """Dictionary-backed store with the same semantics as ``SqlDocumentStore``.

    Every public coroutine completes without yielding to the event loop, so
    each call is atomic with respect to other tasks.  Stored data is deep-copied
    in and out so callers can never mutate state behind the store's back.
    """

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, tuple[dict[str, Any], int]]] = {}

    # ── Test helpers ─────────────────────────────────────────────────────

    def load(self, collection: str, documents: dict[str, dict[str, Any]]) -> None:
        """Seed ``collection`` synchronously (fixtures)."""
        for doc_id, data in documents.items():
            self._put(collection, doc_id, data)

    def dump(self, collection: str) -> dict[str, dict[str, Any]]:
        return {
            doc_id: copy.deepcopy(data)
            for doc_id, (data, _) in self._collections.get(collection, {}).items()
        }

    # ── DocumentStore API ────────────────────────────────────────────────

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        entry = self._collections.get(collection, {}).get(doc_id)
        if entry is None:
            return None
        data, version = entry
        return Document(id=doc_id, data=copy.deepcopy(data), version=version)

    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        self._put(collection, doc_id, data)

    async def create_if_absent(
        self, collection: str, doc_id: str, data: dict[str, Any]
    ) -> bool:
        if doc_id in self._collections.get(collection, {}):
            return False
        self._put(collection, doc_id, data)
        return True

    async def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        expected_version: int,
        data: dict[str, Any],
    ) -> bool:
        entry = self._collections.get(collection, {}).get(doc_id)
        if entry is None or entry[1] != expected_version:
            return False
        self._put(collection, doc_id, data)
        return True

    async def delete(self, collection: str, doc_id: str) -> None:
        self._collections.get(collection, {}).pop(doc_id, None)

    async def query(
        self,
        collection: str,
        filters: list[Filter] | None = None,
        order_by: list[OrderBy] | None = None,
        limit: int | None = None,
    ) -> list[Document]:
        filters = filters or []
        rows = [
            Document(id=doc_id, data=copy.deepcopy(data), version=version)
            for doc_id, (data, version) in self._collections.get(collection, {}).items()
            if all(_matches(data, f) for f in filters)
        ]
        rows.sort(key=lambda d: d.id)
        # Apply sort keys last-to-first so the first key dominates (stable sort).
        for order in reversed(order_by or []):
            present = [d for d in rows if d.data.get(order.field) is not None]
            absent = [d for d in rows if d.data.get(order.field) is None]
            present.sort(key=lambda d: d.data[order.field], reverse=order.descending)
            rows = present + absent
        if limit is not None:
            rows = rows[:limit]
        return rows

    async def commit(self, batch: WriteBatch) -> None:
        for op, collection, doc_id, data in batch.operations:
            if op == "set":
                self._put(collection, doc_id, data)
            else:
                self._collections.get(collection, {}).pop(doc_id, None)

    # ── Internals ────────────────────────────────────────────────────────

    def _put(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        docs = self._collections.setdefault(collection, {})
        previous = docs.get(doc_id)
        version = previous[1] + 1 if previous else 1
        docs[doc_id] = (copy.deepcopy(data), version)
