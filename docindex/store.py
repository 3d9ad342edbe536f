"""Record persistence behind a small key/value + secondary index contract.

Provides:
- Store: protocol used by the job tracker, processor, index rebuild and query log.
- InMemoryStore: dict-backed store for tests and single-process use.
- SqlStore: SQLAlchemy-backed store (records + record_index tables).

Records are JSON-compatible dicts. Collections used by the pipeline:
documents, chunks, jobs, queries.
"""
import copy
import logging
import threading
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple

from sqlalchemy import and_, delete, select
from sqlalchemy.exc import SQLAlchemyError

from docindex.db import init_db, make_engine, make_session_factory, session_scope
from docindex.errors import StoreError
from docindex.models import Record, RecordIndex
from docindex.schemas import utcnow

logger = logging.getLogger(__name__)

DEFAULT_INDEXED_FIELDS: Dict[str, Tuple[str, ...]] = {
    "chunks": ("document_id",),
    "jobs": ("document_id", "stage"),
    "documents": ("status",),
    "queries": (),
}


def _field_value(record: Mapping[str, Any], field: str) -> Optional[str]:
    value: Any = record
    for part in field.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class Store(Protocol):
    def put(self, collection: str, id: str, record: Dict[str, Any]) -> None: ...

    def get(self, collection: str, id: str) -> Optional[Dict[str, Any]]: ...

    def query_by_index(self, collection: str, field: str, value: Any) -> List[Dict[str, Any]]: ...

    def delete(self, collection: str, id: str) -> bool: ...

    def all(self, collection: str) -> List[Dict[str, Any]]: ...


class _IndexedFields:
    def __init__(self, indexed_fields: Optional[Mapping[str, Iterable[str]]]):
        source = DEFAULT_INDEXED_FIELDS if indexed_fields is None else indexed_fields
        self.indexed_fields: Dict[str, Tuple[str, ...]] = {k: tuple(v) for k, v in source.items()}

    def fields_for(self, collection: str) -> Tuple[str, ...]:
        return self.indexed_fields.get(collection, ())

    def check_indexed(self, collection: str, field: str) -> None:
        if field not in self.fields_for(collection):
            raise StoreError(
                f"Field '{field}' is not indexed for collection '{collection}'",
                operation="query_by_index",
                details={"collection": collection, "indexed": list(self.fields_for(collection))},
            )


class InMemoryStore(_IndexedFields):
    """Insertion-ordered in-process store; records are copied in and out."""

    def __init__(self, indexed_fields: Optional[Mapping[str, Iterable[str]]] = None):
        super().__init__(indexed_fields)
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self._lock = threading.Lock()

    def put(self, collection: str, id: str, record: Dict[str, Any]) -> None:
        with self._lock:
            self._data[collection][id] = copy.deepcopy(record)

    def get(self, collection: str, id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._data[collection].get(id)
            return copy.deepcopy(record) if record is not None else None

    def query_by_index(self, collection: str, field: str, value: Any) -> List[Dict[str, Any]]:
        self.check_indexed(collection, field)
        wanted = _field_value({"v": value}, "v")
        with self._lock:
            return [
                copy.deepcopy(r) for r in self._data[collection].values()
                if _field_value(r, field) == wanted
            ]

    def delete(self, collection: str, id: str) -> bool:
        with self._lock:
            return self._data[collection].pop(id, None) is not None

    def all(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._data[collection].values()]


class SqlStore(_IndexedFields):
    """Store on a relational database via SQLAlchemy.

    Each record is a row in `records` (JSON body); every declared indexed
    field gets a row in `record_index`, rewritten on each put.
    """

    def __init__(self, url: Optional[str] = None, indexed_fields: Optional[Mapping[str, Iterable[str]]] = None, engine=None):
        super().__init__(indexed_fields)
        self.engine = engine or make_engine(url)
        self._factory = make_session_factory(self.engine)
        self._lock = threading.Lock()
        init_db(self.engine)

    def put(self, collection: str, id: str, record: Dict[str, Any]) -> None:
        try:
            with self._lock, session_scope(self._factory) as s:
                row = s.execute(
                    select(Record).where(Record.collection == collection, Record.record_id == id)
                ).scalar_one_or_none()
                body = copy.deepcopy(record)
                if row is None:
                    s.add(Record(collection=collection, record_id=id, body=body))
                else:
                    row.body = body
                    row.updated_at = utcnow()
                s.execute(
                    delete(RecordIndex).where(RecordIndex.collection == collection, RecordIndex.record_id == id)
                )
                for field in self.fields_for(collection):
                    s.add(RecordIndex(collection=collection, record_id=id, field=field, value=_field_value(record, field)))
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to write {collection}/{id}: {e}", operation="put") from e

    def get(self, collection: str, id: str) -> Optional[Dict[str, Any]]:
        try:
            with session_scope(self._factory) as s:
                row = s.execute(
                    select(Record.body).where(Record.collection == collection, Record.record_id == id)
                ).scalar_one_or_none()
                return copy.deepcopy(row) if row is not None else None
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to read {collection}/{id}: {e}", operation="get") from e

    def query_by_index(self, collection: str, field: str, value: Any) -> List[Dict[str, Any]]:
        self.check_indexed(collection, field)
        wanted = _field_value({"v": value}, "v")
        cond = RecordIndex.value.is_(None) if wanted is None else RecordIndex.value == wanted
        stmt = (
            select(Record.body)
            .join(
                RecordIndex,
                and_(RecordIndex.collection == Record.collection, RecordIndex.record_id == Record.record_id),
            )
            .where(RecordIndex.collection == collection, RecordIndex.field == field, cond)
            .order_by(Record.seq)
        )
        try:
            with session_scope(self._factory) as s:
                return [copy.deepcopy(b) for b in s.execute(stmt).scalars().all()]
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to query {collection}.{field}: {e}", operation="query_by_index") from e

    def delete(self, collection: str, id: str) -> bool:
        try:
            with self._lock, session_scope(self._factory) as s:
                s.execute(
                    delete(RecordIndex).where(RecordIndex.collection == collection, RecordIndex.record_id == id)
                )
                result = s.execute(
                    delete(Record).where(Record.collection == collection, Record.record_id == id)
                )
                return (result.rowcount or 0) > 0
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to delete {collection}/{id}: {e}", operation="delete") from e

    def all(self, collection: str) -> List[Dict[str, Any]]:
        try:
            with session_scope(self._factory) as s:
                rows = s.execute(
                    select(Record.body).where(Record.collection == collection).order_by(Record.seq)
                ).scalars().all()
                return [copy.deepcopy(b) for b in rows]
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list {collection}: {e}", operation="all") from e
