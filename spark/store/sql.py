"""PostgreSQL-backed ``DocumentStore`` built on SQLAlchemy's async engine."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog
from sqlalchemy import and_, delete, false, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from spark.errors import StoreUnavailableError
from spark.models.document import DocumentRow
from spark.store.base import Document, DocumentStore, Filter, OrderBy, WriteBatch

logger = structlog.get_logger("spark.store.sql")

T = TypeVar("T")


def _typed(field: str, sample: Any):
    """JSONB accessor for ``field`` cast to the SQL type of ``sample``."""
    element = DocumentRow.data[field]
    if isinstance(sample, bool):
        return element.as_boolean()
    if isinstance(sample, int):
        return element.as_integer()
    if isinstance(sample, float):
        return element.as_float()
    return element.as_string()


def _condition(flt: Filter):
    if flt.op == "array_contains":
        return DocumentRow.data[flt.field].contains([flt.value])
    if flt.op == "in":
        values = list(flt.value)
        if not values:
            return false()
        return _typed(flt.field, values[0]).in_(values)

    column = _typed(flt.field, flt.value)
    if flt.op == "==":
        return column == flt.value
    if flt.op == "!=":
        return column != flt.value
    if flt.op == "<":
        return column < flt.value
    if flt.op == "<=":
        return column <= flt.value
    if flt.op == ">":
        return column > flt.value
    return column >= flt.value


class SqlDocumentStore(DocumentStore):
    """Document store over the single ``documents`` table.

    Each call runs in its own short transaction and is bounded by
    ``timeout`` seconds; timeouts and connection failures are raised as
    ``StoreUnavailableError`` so callers can treat them as retryable.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeout: float = 10.0,
    ) -> None:
        self._session_factory = session_factory
        self._timeout = timeout

    async def _run(self, operation: str, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async def _in_transaction() -> T:
            async with self._session_factory() as session:
                async with session.begin():
                    return await fn(session)

        try:
            return await asyncio.wait_for(_in_transaction(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            logger.warning("store_timeout", operation=operation, timeout=self._timeout)
            raise StoreUnavailableError(
                f"Document store {operation} timed out after {self._timeout}s"
            ) from exc
        except (OperationalError, InterfaceError, ConnectionError) as exc:
            logger.error("store_unavailable", operation=operation, error=str(exc))
            raise StoreUnavailableError(f"Document store {operation} failed") from exc

    # ── DocumentStore API ────────────────────────────────────────────────

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        async def _get(session: AsyncSession) -> Optional[Document]:
            row = await session.get(DocumentRow, (collection, doc_id))
            if row is None:
                return None
            return Document(id=row.id, data=row.data, version=row.version)

        return await self._run("get", _get)

    async def set(self, collection: str, doc_id: str, data: dict[str, Any]) -> None:
        async def _set(session: AsyncSession) -> None:
            await session.execute(self._upsert(collection, doc_id, data))

        await self._run("set", _set)

    async def create_if_absent(
        self, collection: str, doc_id: str, data: dict[str, Any]
    ) -> bool:
        async def _create(session: AsyncSession) -> bool:
            stmt = (
                pg_insert(DocumentRow)
                .values(collection=collection, id=doc_id, data=data, version=1)
                .on_conflict_do_nothing(index_elements=["collection", "id"])
                .returning(DocumentRow.id)
            )
            result = await session.execute(stmt)
            return result.first() is not None

        return await self._run("create_if_absent", _create)

    async def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        expected_version: int,
        data: dict[str, Any],
    ) -> bool:
        async def _cas(session: AsyncSession) -> bool:
            stmt = (
                update(DocumentRow)
                .where(
                    DocumentRow.collection == collection,
                    DocumentRow.id == doc_id,
                    DocumentRow.version == expected_version,
                )
                .values(data=data, version=expected_version + 1, updated_at=func.now())
            )
            result = await session.execute(stmt)
            return result.rowcount == 1

        return await self._run("compare_and_set", _cas)

    async def delete(self, collection: str, doc_id: str) -> None:
        async def _delete(session: AsyncSession) -> None:
            await session.execute(
                delete(DocumentRow).where(
                    DocumentRow.collection == collection, DocumentRow.id == doc_id
                )
            )

        await self._run("delete", _delete)

    async def query(
        self,
        collection: str,
        filters: list[Filter] | None = None,
        order_by: list[OrderBy] | None = None,
        limit: int | None = None,
    ) -> list[Document]:
        conditions = [DocumentRow.collection == collection]
        conditions.extend(_condition(f) for f in filters or [])

        stmt = select(DocumentRow).where(and_(*conditions))
        for order in order_by or []:
            # JSONB orders numbers numerically and strings lexically.
            element = DocumentRow.data[order.field]
            stmt = stmt.order_by(
                element.desc().nullslast() if order.descending else element.asc().nullslast()
            )
        stmt = stmt.order_by(DocumentRow.id.asc())
        if limit is not None:
            stmt = stmt.limit(limit)

        async def _query(session: AsyncSession) -> list[Document]:
            rows = (await session.execute(stmt)).scalars().all()
            return [Document(id=r.id, data=r.data, version=r.version) for r in rows]

        return await self._run("query", _query)

    async def commit(self, batch: WriteBatch) -> None:
        if not batch.operations:
            return

        async def _commit(session: AsyncSession) -> None:
            for op, collection, doc_id, data in batch.operations:
                if op == "set":
                    await session.execute(self._upsert(collection, doc_id, data or {}))
                else:
                    await session.execute(
                        delete(DocumentRow).where(
                            DocumentRow.collection == collection,
                            DocumentRow.id == doc_id,
                        )
                    )

        await self._run("commit", _commit)
        logger.debug("batch_committed", writes=len(batch))

    async def close(self) -> None:
        bind = self._session_factory.kw.get("bind")
        if bind is not None:
            await bind.dispose()

    # ── Internals ────────────────────────────────────────────────────────

    @staticmethod
    def _upsert(collection: str, doc_id: str, data: dict[str, Any]):
        stmt = pg_insert(DocumentRow).values(
            collection=collection, id=doc_id, data=data, version=1
        )
        return stmt.on_conflict_do_update(
            index_elements=["collection", "id"],
            set_={
                "data": stmt.excluded.data,
                "version": DocumentRow.version + 1,
                "updated_at": func.now(),
            },
        )
