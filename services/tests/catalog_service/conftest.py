from collections.abc import AsyncIterator
from typing import Any

import pytest_asyncio

from services.catalog_service.app.models import Base
from services.catalog_service.app.store import Filter, Mutator, SqlDocumentStore
from services.common import create_schema, dispose_engines, get_session_factory


class FlakyStore:
    """Real store that fails writes to chosen documents and queries on chosen collections."""

    def __init__(self, inner: SqlDocumentStore) -> None:
        self.inner = inner
        self.failing_documents: set[tuple[str, str]] = set()
        self.failing_queries: set[str] = set()

    def _check(self, collection: str, doc_id: str) -> None:
        if (collection, doc_id) in self.failing_documents:
            raise RuntimeError(f"store unavailable for {collection}/{doc_id}")

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        return await self.inner.get(collection, doc_id)

    async def get_many(self, collection: str, doc_ids) -> dict[str, dict[str, Any]]:
        return await self.inner.get_many(collection, doc_ids)

    async def query(self, collection: str, *filters: Filter) -> list[dict[str, Any]]:
        if collection in self.failing_queries:
            raise RuntimeError(f"query on {collection} timed out")
        return await self.inner.query(collection, *filters)

    async def add(self, collection: str, data: dict[str, Any], *, doc_id: str | None = None) -> str:
        return await self.inner.add(collection, data, doc_id=doc_id)

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        self._check(collection, doc_id)
        return await self.inner.update(collection, doc_id, fields)

    async def delete(self, collection: str, doc_id: str) -> bool:
        return await self.inner.delete(collection, doc_id)

    async def increment(self, collection: str, doc_id: str, field: str, amount: int | float = 1) -> int | float:
        self._check(collection, doc_id)
        return await self.inner.increment(collection, doc_id, field, amount)

    async def transact(self, collection: str, doc_id: str, mutator: Mutator) -> dict[str, Any]:
        self._check(collection, doc_id)
        return await self.inner.transact(collection, doc_id, mutator)


@pytest_asyncio.fixture
async def store(tmp_path) -> AsyncIterator[SqlDocumentStore]:
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}"
    await create_schema(database_url, Base.metadata)
    try:
        yield SqlDocumentStore(get_session_factory(database_url))
    finally:
        await dispose_engines()


@pytest_asyncio.fixture
async def flaky_store(store: SqlDocumentStore) -> FlakyStore:
    return FlakyStore(store)
