"""Document store collaborator for the catalog core.

The catalog only needs a narrow document API: single-document reads and
writes, simple filtered queries, an "IN" fetch capped at
``MAX_IN_QUERY_VALUES`` ids, and single-document atomic read-modify-write.
There is no multi-document transaction; callers compose
independent single-document writes.
"""

from __future__ import annotations

import asyncio
import copy
import weakref
from dataclasses import dataclass
from typing import Any, Callable, Final, Literal, Protocol, Sequence
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common import session_scope

from .errors import NotFoundError, ValidationError
from .models import Document

MAX_IN_QUERY_VALUES: Final = 30

PRODUCTS: Final = "products"
CATEGORIES: Final = "categories"
SUBCATEGORIES: Final = "subcategories"
MANUFACTURERS: Final = "manufacturers"
BATCHES: Final = "batches"
DISCOUNTS: Final = "discounts"

FilterOp = Literal["==", "!=", "in", "array-contains", "array-contains-any"]
Mutator = Callable[[dict[str, Any]], "dict[str, Any] | None"]


@dataclass(frozen=True)
class Filter:
    field: str
    op: FilterOp
    value: Any

    def __post_init__(self) -> None:
        if self.op in ("in", "array-contains-any"):
            values = list(self.value)
            if len(values) > MAX_IN_QUERY_VALUES:
                msg = f"'{self.op}' filters accept at most {MAX_IN_QUERY_VALUES} values, got {len(values)}"
                raise ValueError(msg)

    def matches(self, document: dict[str, Any]) -> bool:
        current = document.get(self.field)
        if self.op == "==":
            return current == self.value
        if self.op == "!=":
            return current != self.value
        if self.op == "in":
            return current in self.value
        if not isinstance(current, list):
            return False
        if self.op == "array-contains":
            return self.value in current
        return any(item in current for item in self.value)


def chunked(values: Sequence[str], size: int = MAX_IN_QUERY_VALUES) -> list[list[str]]:
    """Split ``values`` into lists no longer than ``size``."""

    if size <= 0:
        msg = "chunk size must be positive"
        raise ValueError(msg)
    return [list(values[start : start + size]) for start in range(0, len(values), size)]


class DocumentStore(Protocol):
    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None: ...

    async def get_many(self, collection: str, doc_ids: Sequence[str]) -> dict[str, dict[str, Any]]: ...

    async def query(self, collection: str, *filters: Filter) -> list[dict[str, Any]]: ...

    async def add(self, collection: str, data: dict[str, Any], *, doc_id: str | None = None) -> str: ...

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> dict[str, Any]: ...

    async def delete(self, collection: str, doc_id: str) -> bool: ...

    async def increment(self, collection: str, doc_id: str, field: str, amount: int | float = 1) -> int | float: ...

    async def transact(self, collection: str, doc_id: str, mutator: Mutator) -> dict[str, Any]: ...


def _as_dict(row: Document) -> dict[str, Any]:
    return {**copy.deepcopy(row.data), "id": row.id}


def _strip_id(data: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if key != "id"}


class SqlDocumentStore:
    """Document store persisted in a single SQL table through SQLAlchemy asyncio.

    Each call runs in its own short transaction. ``transact`` additionally
    serialises writers of the same document inside this process and asks the
    database for a row lock where the dialect supports one.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, collection: str, doc_id: str) -> asyncio.Lock:
        key = (collection, doc_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        async with session_scope(self._session_factory) as session:
            row = await session.get(Document, (collection, doc_id))
            return _as_dict(row) if row is not None else None

    async def get_many(self, collection: str, doc_ids: Sequence[str]) -> dict[str, dict[str, Any]]:
        ids = list(dict.fromkeys(doc_ids))
        if len(ids) > MAX_IN_QUERY_VALUES:
            msg = f"'in' fetches accept at most {MAX_IN_QUERY_VALUES} ids, got {len(ids)}"
            raise ValueError(msg)
        if not ids:
            return {}
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(Document).where(Document.collection == collection, Document.id.in_(ids))
            )
            return {row.id: _as_dict(row) for row in result.scalars()}

    async def query(self, collection: str, *filters: Filter) -> list[dict[str, Any]]:
        async with session_scope(self._session_factory) as session:
            result = await session.execute(
                select(Document)
                .where(Document.collection == collection)
                .order_by(Document.created_at.asc(), Document.id.asc())
            )
            documents = [_as_dict(row) for row in result.scalars()]
        return [doc for doc in documents if all(f.matches(doc) for f in filters)]

    async def add(self, collection: str, data: dict[str, Any], *, doc_id: str | None = None) -> str:
        identifier = doc_id or uuid4().hex
        try:
            async with session_scope(self._session_factory) as session:
                session.add(Document(collection=collection, id=identifier, data=_strip_id(data)))
                await session.flush()
        except IntegrityError as exc:
            raise ValidationError(f"{collection}/{identifier} already exists") from exc
        return identifier

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> dict[str, Any]:
        def _merge(current: dict[str, Any]) -> dict[str, Any]:
            current.update(_strip_id(fields))
            return current

        return await self.transact(collection, doc_id, _merge)

    async def delete(self, collection: str, doc_id: str) -> bool:
        async with self._lock_for(collection, doc_id):
            async with session_scope(self._session_factory) as session:
                row = await session.get(Document, (collection, doc_id))
                if row is None:
                    return False
                await session.delete(row)
                return True

    async def increment(self, collection: str, doc_id: str, field: str, amount: int | float = 1) -> int | float:
        def _add(current: dict[str, Any]) -> dict[str, Any]:
            current[field] = (current.get(field) or 0) + amount
            return current

        updated = await self.transact(collection, doc_id, _add)
        return updated[field]

    async def transact(self, collection: str, doc_id: str, mutator: Mutator) -> dict[str, Any]:
        async with self._lock_for(collection, doc_id):
            async with session_scope(self._session_factory) as session:
                result = await session.execute(
                    select(Document)
                    .where(Document.collection == collection, Document.id == doc_id)
                    .with_for_update()
                )
                row = result.scalar_one_or_none()
                if row is None:
                    raise NotFoundError(collection, doc_id)
                current = _as_dict(row)
                updated = mutator(current)
                if updated is None:
                    updated = current
                row.data = _strip_id(updated)
                await session.flush()
                return {**copy.deepcopy(row.data), "id": doc_id}
