"""Key/value document store over a single SQL table.

Each document is a JSON object addressed by (collection, key). Queries are
equality filters on top-level fields plus an optional Python predicate for
range conditions; both are evaluated after loading the collection.
"""

from __future__ import annotations

from typing import Any, Callable

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mm_engine.db.models import DocumentORM

logger = structlog.get_logger()


class DocumentStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def get(self, collection: str, key: str) -> dict | None:
        async with self.session_factory() as session:
            stmt = select(DocumentORM).where(
                DocumentORM.collection == collection, DocumentORM.key == key
            )
            result = await session.execute(stmt)
            orm = result.scalar_one_or_none()
            if orm is None:
                return None
            return dict(orm.body)

    async def put(self, collection: str, key: str, document: dict) -> None:
        """Insert or replace a document."""
        async with self.session_factory() as session:
            stmt = select(DocumentORM).where(
                DocumentORM.collection == collection, DocumentORM.key == key
            )
            result = await session.execute(stmt)
            orm = result.scalar_one_or_none()
            if orm is None:
                session.add(DocumentORM(collection=collection, key=key, body=document))
            else:
                orm.body = document
            await session.flush()
            await session.commit()

    async def update(self, collection: str, key: str, changes: dict) -> dict:
        """Shallow-merge ``changes`` into an existing document. Returns the merged body."""
        async with self.session_factory() as session:
            stmt = select(DocumentORM).where(
                DocumentORM.collection == collection, DocumentORM.key == key
            )
            result = await session.execute(stmt)
            orm = result.scalar_one_or_none()
            if orm is None:
                raise KeyError(f"{collection}/{key}")
            merged = {**orm.body, **changes}
            orm.body = merged
            await session.flush()
            await session.commit()
            logger.debug("document_updated", collection=collection, key=key, fields=list(changes))
            return merged

    async def delete(self, collection: str, key: str) -> bool:
        async with self.session_factory() as session:
            stmt = delete(DocumentORM).where(
                DocumentORM.collection == collection, DocumentORM.key == key
            )
            result = await session.execute(stmt)
            await session.commit()
            return (result.rowcount or 0) > 0

    async def find(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        predicate: Callable[[dict], bool] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict]:
        async with self.session_factory() as session:
            stmt = select(DocumentORM).where(DocumentORM.collection == collection)
            result = await session.execute(stmt)
            documents = [dict(orm.body) for orm in result.scalars().all()]

        if where:
            documents = [
                d for d in documents if all(d.get(field) == value for field, value in where.items())
            ]
        if predicate is not None:
            documents = [d for d in documents if predicate(d)]
        if order_by is not None:
            documents.sort(key=lambda d: d.get(order_by) or 0, reverse=descending)
        if limit is not None:
            documents = documents[:limit]
        return documents
