from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
import logging
from typing import Any, Awaitable, Callable, Iterable, Protocol, Sequence, TypeVar

from productscribe.core.errors import (
    DocumentNotFoundError,
    DocumentStoreError,
    DocumentStoreTimeoutError,
    TransactionConflictError,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Every document may carry this epoch-ms field; TTL purges delete documents past it.
EXPIRES_AT_FIELD = "expiresAt"

WRITE_SET = "set"
WRITE_UPDATE = "update"
WRITE_DELETE = "delete"

_FILTER_OPERATORS = {"==", "!=", "<", "<=", ">", ">="}


@dataclass(frozen=True)
class Document:
    # Snapshot of a stored document with its optimistic concurrency version.
    collection: str
    doc_id: str
    data: dict[str, Any]
    version: int


@dataclass(frozen=True)
class FieldFilter:
    # Top-level field comparison used by queries (documents missing the field never match).
    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in _FILTER_OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op}")


@dataclass(frozen=True)
class WriteOp:
    kind: str
    collection: str
    doc_id: str
    data: dict[str, Any] | None = None
    merge: bool = False


@dataclass
class Transaction:
    # Buffer reads and writes; the store validates read versions at commit time.
    reader: Callable[[str, str], Awaitable[Document | None]]
    reads: dict[tuple[str, str], int | None] = field(default_factory=dict)
    writes: list[WriteOp] = field(default_factory=list)

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        if self.writes:
            raise DocumentStoreError("Transaction reads must happen before writes")
        document = await self.reader(collection, doc_id)
        self.reads[(collection, doc_id)] = document.version if document else None
        return copy.deepcopy(document.data) if document else None

    def set(self, collection: str, doc_id: str, data: dict[str, Any], *, merge: bool = False) -> None:
        self.writes.append(WriteOp(WRITE_SET, collection, doc_id, copy.deepcopy(data), merge))

    def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        self.writes.append(WriteOp(WRITE_UPDATE, collection, doc_id, copy.deepcopy(fields)))

    def delete(self, collection: str, doc_id: str) -> None:
        self.writes.append(WriteOp(WRITE_DELETE, collection, doc_id))


class DocumentStore(Protocol):
    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        ...

    async def set(
        self, collection: str, doc_id: str, data: dict[str, Any], *, merge: bool = False
    ) -> None:
        ...

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        ...

    async def delete(self, collection: str, doc_id: str) -> None:
        ...

    async def query(
        self,
        collection: str,
        *,
        filters: Sequence[FieldFilter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Document]:
        ...

    async def batch(self, writes: Sequence[WriteOp]) -> None:
        ...

    async def run_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        *,
        max_attempts: int = 5,
    ) -> T:
        ...

    async def purge_expired(self, collection: str, now_ms: int, *, limit: int) -> int:
        ...

    async def ping(self) -> None:
        ...

    async def close(self) -> None:
        ...


def expires_at_of(data: dict[str, Any] | None) -> int | None:
    # Only integer epoch-ms values participate in TTL purges.
    if not data:
        return None
    value = data.get(EXPIRES_AT_FIELD)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def field_value(data: dict[str, Any], name: str) -> Any:
    # Resolve dotted paths for nested map fields.
    current: Any = data
    for part in name.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def matches_filter(data: dict[str, Any], flt: FieldFilter) -> bool:
    value = field_value(data, flt.field)
    if value is None:
        return False
    try:
        if flt.op == "==":
            return value == flt.value
        if flt.op == "!=":
            return value != flt.value
        if flt.op == "<":
            return value < flt.value
        if flt.op == "<=":
            return value <= flt.value
        if flt.op == ">":
            return value > flt.value
        return value >= flt.value
    except TypeError:
        # Mixed-type comparisons never match, mirroring typed index semantics.
        return False


async def with_store_timeout(awaitable: Awaitable[T], timeout_ms: int) -> T:
    # Bound a store call; timeouts surface as store errors so callers fail closed.
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_ms / 1000.0)
    except asyncio.TimeoutError as exc:
        raise DocumentStoreTimeoutError(f"Document store call exceeded {timeout_ms}ms") from exc


class BaseDocumentStore:
    # Shared single-document helpers expressed as blind transactions over backend primitives.

    async def _read_document(self, collection: str, doc_id: str) -> Document | None:
        raise NotImplementedError

    async def _commit(self, txn: Transaction) -> None:
        raise NotImplementedError

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        document = await self._read_document(collection, doc_id)
        return copy.deepcopy(document.data) if document else None

    async def get_document(self, collection: str, doc_id: str) -> Document | None:
        return await self._read_document(collection, doc_id)

    async def set(
        self, collection: str, doc_id: str, data: dict[str, Any], *, merge: bool = False
    ) -> None:
        txn = Transaction(self._read_document)
        txn.set(collection, doc_id, data, merge=merge)
        await self._commit(txn)

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        txn = Transaction(self._read_document)
        txn.update(collection, doc_id, fields)
        await self._commit(txn)

    async def delete(self, collection: str, doc_id: str) -> None:
        txn = Transaction(self._read_document)
        txn.delete(collection, doc_id)
        await self._commit(txn)

    async def batch(self, writes: Sequence[WriteOp]) -> None:
        if not writes:
            return
        txn = Transaction(self._read_document)
        txn.writes.extend(writes)
        await self._commit(txn)

    async def run_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        *,
        max_attempts: int = 5,
    ) -> T:
        # Re-run the whole callback on conflicts so each attempt re-reads fresh state.
        attempt = 1
        while True:
            txn = Transaction(self._read_document)
            result = await fn(txn)
            try:
                await self._commit(txn)
            except TransactionConflictError:
                if attempt >= max(max_attempts, 1):
                    raise
                logger.debug("document_transaction_retry attempt=%s", attempt)
                attempt += 1
                continue
            return result

    async def close(self) -> None:
        return None


def apply_write(current: dict[str, Any] | None, op: WriteOp) -> dict[str, Any] | None:
    # Compute the post-write document body; None means deleted.
    if op.kind == WRITE_DELETE:
        return None
    if op.kind == WRITE_UPDATE:
        if current is None:
            raise DocumentNotFoundError(f"{op.collection}/{op.doc_id} does not exist")
        merged = dict(current)
        merged.update(op.data or {})
        return merged
    if op.merge and current is not None:
        merged = dict(current)
        merged.update(op.data or {})
        return merged
    return dict(op.data or {})


class MemoryDocumentStore(BaseDocumentStore):
    """In-process document store for tests and local development.

    Implements the same optimistic transaction contract as the SQL store: commit fails with
    TransactionConflictError when any document read inside the transaction changed since.
    """

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, tuple[int, dict[str, Any]]]] = {}
        self._lock = asyncio.Lock()

    async def _read_document(self, collection: str, doc_id: str) -> Document | None:
        entry = self._collections.get(collection, {}).get(doc_id)
        if entry is None:
            return None
        version, data = entry
        return Document(collection, doc_id, copy.deepcopy(data), version)

    async def _commit(self, txn: Transaction) -> None:
        async with self._lock:
            for (collection, doc_id), version in txn.reads.items():
                entry = self._collections.get(collection, {}).get(doc_id)
                current_version = entry[0] if entry else None
                if current_version != version:
                    raise TransactionConflictError(f"{collection}/{doc_id} changed during transaction")
            # Stage writes first so a failing update leaves no partial commit.
            staged: dict[tuple[str, str], tuple[int, dict[str, Any]] | None] = {}
            for op in txn.writes:
                key = (op.collection, op.doc_id)
                if key in staged:
                    previous = staged[key]
                else:
                    previous = self._collections.get(op.collection, {}).get(op.doc_id)
                current = previous[1] if previous else None
                body = apply_write(current, op)
                if body is None:
                    staged[key] = None
                else:
                    next_version = (previous[0] if previous else 0) + 1
                    staged[key] = (next_version, body)
            for (collection, doc_id), value in staged.items():
                bucket = self._collections.setdefault(collection, {})
                if value is None:
                    bucket.pop(doc_id, None)
                else:
                    bucket[doc_id] = (value[0], copy.deepcopy(value[1]))

    async def query(
        self,
        collection: str,
        *,
        filters: Sequence[FieldFilter] = (),
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Document]:
        documents = [
            Document(collection, doc_id, copy.deepcopy(data), version)
            for doc_id, (version, data) in self._collections.get(collection, {}).items()
            if all(matches_filter(data, flt) for flt in filters)
        ]
        if order_by is not None:
            documents = [doc for doc in documents if field_value(doc.data, order_by) is not None]
            documents.sort(key=lambda doc: field_value(doc.data, order_by), reverse=descending)
        if limit is not None:
            documents = documents[: max(limit, 0)]
        return documents

    async def purge_expired(self, collection: str, now_ms: int, *, limit: int) -> int:
        async with self._lock:
            bucket = self._collections.get(collection, {})
            expired = [
                doc_id
                for doc_id, (_version, data) in bucket.items()
                if (expires_at_of(data) or now_ms + 1) <= now_ms
            ][: max(limit, 0)]
            for doc_id in expired:
                bucket.pop(doc_id, None)
        return len(expired)

    async def ping(self) -> None:
        return None

    def collections(self) -> Iterable[str]:
        return list(self._collections.keys())
