from __future__ import annotations

import logging
from typing import Any, Sequence

from sqlalchemy import and_, delete, select, text, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from productscribe.core.errors import DocumentStoreError, TransactionConflictError
from productscribe.domain.models import DocumentRecord
from productscribe.persistence.documents import (
    EXPIRES_AT_FIELD,
    BaseDocumentStore,
    Document,
    FieldFilter,
    Transaction,
    WRITE_DELETE,
    apply_write,
    expires_at_of,
)


logger = logging.getLogger(__name__)

_UNREAD = object()


def _json_path(field: str):
    # Typed JSONB accessors keep comparisons on numbers and strings index-friendly.
    expr = DocumentRecord.data
    for part in field.split("."):
        expr = expr[part]
    return expr


def _filter_clause(flt: FieldFilter):
    if flt.field == EXPIRES_AT_FIELD:
        column = DocumentRecord.expires_at
    elif isinstance(flt.value, bool):
        column = _json_path(flt.field).as_boolean()
    elif isinstance(flt.value, int):
        column = _json_path(flt.field).as_integer()
    elif isinstance(flt.value, float):
        column = _json_path(flt.field).as_float()
    else:
        column = _json_path(flt.field).as_string()
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


class SqlDocumentStore(BaseDocumentStore):
    """Postgres-backed document store.

    Each document is one JSONB row guarded by a version column; transactions commit only when
    every document they read still carries the version observed at read time.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def _read_document(self, collection: str, doc_id: str) -> Document | None:
        try:
            async with self._session_factory() as session:
                row = await session.get(DocumentRecord, (collection, doc_id))
        except SQLAlchemyError as exc:
            raise DocumentStoreError(f"read failed for {collection}/{doc_id}") from exc
        if row is None:
            return None
        return Document(collection, doc_id, dict(row.data), int(row.version))

    async def _locked_row(
        self, session: AsyncSession, collection: str, doc_id: str
    ) -> DocumentRecord | None:
        result = await session.execute(
            select(DocumentRecord)
            .where(DocumentRecord.collection == collection, DocumentRecord.doc_id == doc_id)
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def _commit(self, txn: Transaction) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await self._apply(session, txn)
        except IntegrityError as exc:
            # Concurrent insert of the same key lost the race.
            raise TransactionConflictError("document created concurrently") from exc
        except (TransactionConflictError, DocumentStoreError):
            raise
        except SQLAlchemyError as exc:
            raise DocumentStoreError("transaction commit failed") from exc

    async def _apply(self, session: AsyncSession, txn: Transaction) -> None:
        written = {(op.collection, op.doc_id) for op in txn.writes}
        # Read-only documents are share-locked and version checked.
        for (collection, doc_id), version in txn.reads.items():
            if (collection, doc_id) in written:
                continue
            result = await session.execute(
                select(DocumentRecord.version)
                .where(DocumentRecord.collection == collection, DocumentRecord.doc_id == doc_id)
                .with_for_update(read=True)
            )
            current = result.scalar_one_or_none()
            if current != version:
                raise TransactionConflictError(f"{collection}/{doc_id} changed during transaction")

        checked: set[tuple[str, str]] = set()
        for op in txn.writes:
            key = (op.collection, op.doc_id)
            row = await self._locked_row(session, op.collection, op.doc_id)
            if key not in checked:
                expected = txn.reads.get(key, _UNREAD)
                current_version = int(row.version) if row is not None else None
                if expected is not _UNREAD and expected != current_version:
                    raise TransactionConflictError(
                        f"{op.collection}/{op.doc_id} changed during transaction"
                    )
                checked.add(key)
            body = apply_write(dict(row.data) if row is not None else None, op)
            if op.kind == WRITE_DELETE:
                if row is not None:
                    await session.execute(
                        delete(DocumentRecord).where(
                            DocumentRecord.collection == op.collection,
                            DocumentRecord.doc_id == op.doc_id,
                        )
                    )
                continue
            assert body is not None
            if row is None:
                await session.execute(
                    insert(DocumentRecord).values(
                        collection=op.collection,
                        doc_id=op.doc_id,
                        data=body,
                        version=1,
                        expires_at=expires_at_of(body),
                    )
                )
            else:
                await session.execute(
                    update(DocumentRecord)
                    .where(
                        DocumentRecord.collection == op.collection,
                        DocumentRecord.doc_id == op.doc_id,
                    )
                    .values(
                        data=body,
                        version=DocumentRecord.version + 1,
                        expires_at=expires_at_of(body),
                    )
                )
            # Keep the session identity map in sync with the bulk statements above.
            session.expire_all()

    async def query(
        self,
        collection: str,
        *,
        filters: Sequence[FieldFilter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Document]:
        clauses = [DocumentRecord.collection == collection]
        clauses.extend(_filter_clause(flt) for flt in filters)
        statement = select(DocumentRecord).where(and_(*clauses))
        if order_by is not None:
            order_column: Any = (
                DocumentRecord.expires_at if order_by == EXPIRES_AT_FIELD else _json_path(order_by)
            )
            statement = statement.where(order_column.is_not(None))
            statement = statement.order_by(order_column.desc() if descending else order_column.asc())
        if limit is not None:
            statement = statement.limit(max(limit, 0))
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(statement)).scalars().all()
        except SQLAlchemyError as exc:
            raise DocumentStoreError(f"query failed for {collection}") from exc
        return [Document(row.collection, row.doc_id, dict(row.data), int(row.version)) for row in rows]

    async def purge_expired(self, collection: str, now_ms: int, *, limit: int) -> int:
        # Bound each pass so large backlogs drain across scheduled runs.
        candidates = (
            select(DocumentRecord.doc_id)
            .where(
                DocumentRecord.collection == collection,
                DocumentRecord.expires_at.is_not(None),
                DocumentRecord.expires_at <= now_ms,
            )
            .limit(max(limit, 0))
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(DocumentRecord).where(
                            DocumentRecord.collection == collection,
                            DocumentRecord.doc_id.in_(candidates.scalar_subquery()),
                        )
                    )
        except SQLAlchemyError as exc:
            raise DocumentStoreError(f"purge failed for {collection}") from exc
        return int(result.rowcount or 0)

    async def ping(self) -> None:
        try:
            async with self._session_factory() as session:
                await session.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise DocumentStoreError("document store unreachable") from exc

    async def close(self) -> None:
        bind = getattr(self._session_factory, "kw", {}).get("bind")
        if bind is not None:
            await bind.dispose()
