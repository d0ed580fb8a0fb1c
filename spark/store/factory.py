"""Build the configured ``DocumentStore`` backend."""

from __future__ import annotations

from spark.config import Settings
from spark.store.base import DocumentStore


def build_store(settings: Settings) -> DocumentStore:
    backend = settings.STORE_BACKEND.lower()
    if backend == "memory":
        from spark.store.memory import MemoryDocumentStore

        return MemoryDocumentStore()
    if backend == "sql":
        from spark.database import get_session_factory
        from spark.store.sql import SqlDocumentStore

        return SqlDocumentStore(
            get_session_factory(), timeout=settings.STORE_TIMEOUT_SECONDS
        )
    raise ValueError(f"Unknown STORE_BACKEND {settings.STORE_BACKEND!r}")
