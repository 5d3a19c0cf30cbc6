"""
Document Store

The session engine reads and writes plain records through a narrow
CRUD + transaction contract (DocumentStore). The shipped implementation
keeps every collection in one SQLAlchemy table with a JSON column.

Usage:
    store = SQLAlchemyDocumentStore(SessionLocal)

    event = store.find_by_id("events", event_id)
    session = store.find_one("workout_sessions", {"athleteInfo.userId": athlete_id})

    def work():
        store.create("workout_sessions", doc)
        store.update("events", event_id, {"status": "in_progress"})

    store.with_transaction(work)
"""
import copy
import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Protocol, TypeVar

from pydantic import TypeAdapter
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from models import Document

logger = logging.getLogger(__name__)

T = TypeVar("T")

_JSON = TypeAdapter(Any)

OPERATORS = ("eq", "ne", "in", "gt", "gte", "lt", "lte")


class DuplicateDocumentError(Exception):
    """A write collided with a collection's unique key."""

    def __init__(self, collection: str, unique_key: Optional[str]):
        super().__init__(f"Duplicate {collection} document for key {unique_key}")
        self.collection = collection
        self.unique_key = unique_key


@dataclass(frozen=True)
class Filter:
    """Single field condition; `field` is a dotted path into the document."""
    field: str
    op: str = "eq"
    value: Any = None

    def __post_init__(self):
        if self.op not in OPERATORS:
            raise ValueError(f"Unsupported filter operator: {self.op}")


@dataclass
class QueryOptions:
    sort_by: Optional[str] = None
    descending: bool = False
    limit: Optional[int] = None
    offset: int = 0


class DocumentStore(Protocol):
    """CRUD + transaction contract consumed by the session engine."""

    def find_by_id(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]: ...

    def find_one(self, collection: str, filter: Mapping[str, Any]) -> Optional[Dict[str, Any]]: ...

    def find_with_filters(
        self,
        collection: str,
        filters: List[Filter],
        options: Optional[QueryOptions] = None,
    ) -> List[Dict[str, Any]]: ...

    def create(self, collection: str, doc: Mapping[str, Any]) -> Dict[str, Any]: ...

    def update(self, collection: str, doc_id: str, patch: Mapping[str, Any]) -> Optional[Dict[str, Any]]: ...

    def with_transaction(self, fn: Callable[[], T]) -> T: ...


# ---------------------------------------------------------------------------
# Matching helpers
# ---------------------------------------------------------------------------

def get_path(doc: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path ("athleteInfo.userId") or return None."""
    value: Any = doc
    for part in path.split("."):
        if not isinstance(value, Mapping):
            return None
        value = value.get(part)
    return value


def to_jsonable(value: Any) -> Any:
    """Convert datetimes, models and friends into JSON-compatible values."""
    return _JSON.dump_python(value, mode="json")


def _parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _compare(actual: Any, op: str, expected: Any) -> bool:
    if isinstance(expected, datetime):
        actual = _parse_datetime(actual)
        expected = _parse_datetime(expected)
    elif op == "in":
        expected = [to_jsonable(item) for item in expected]
    else:
        expected = to_jsonable(expected)

    if op == "eq":
        return actual == expected
    if op == "ne":
        return actual != expected
    if op == "in":
        return actual in expected

    if actual is None or expected is None:
        return False
    try:
        if op == "gt":
            return actual > expected
        if op == "gte":
            return actual >= expected
        if op == "lt":
            return actual < expected
        return actual <= expected
    except TypeError:
        return False


def matches(doc: Mapping[str, Any], filters: List[Filter]) -> bool:
    """True when the document satisfies every filter."""
    return all(_compare(get_path(doc, f.field), f.op, f.value) for f in filters)


def _sort_value(value: Any):
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (1, value)
    parsed = _parse_datetime(value)
    if parsed is not None:
        return (1, parsed.timestamp())
    return (2, str(value))


# ---------------------------------------------------------------------------
# SQL push-down
# ---------------------------------------------------------------------------

def _string_values(f: Filter) -> Optional[List[str]]:
    """Values of an eq / in filter on plain strings, else None."""
    if f.op == "eq":
        candidates = [f.value]
    elif f.op == "in" and isinstance(f.value, (list, tuple, set, frozenset)) and f.value:
        candidates = list(f.value)
    else:
        return None
    if not all(isinstance(value, str) for value in candidates):
        return None
    # str enums bind as their value
    return [to_jsonable(value) for value in candidates]


def _string_type_guard(dialect: str, parts: tuple):
    """Restrict a path to JSON strings, or None when the dialect has no check."""
    if dialect == "postgresql":
        return func.jsonb_typeof(Document.data[parts]) == "string"
    if dialect == "sqlite":
        path = "$" + "".join(f'."{part}"' for part in parts)
        return func.json_type(Document.data, path) == "text"
    return None


def split_filters(filters: List[Filter], dialect: str):
    """
    Split filters into SQL predicates and the ones left to Python.

    Returns:
        (clauses, remaining): remaining filters must still be checked
        with matches(). A pushed filter stays in `remaining` when the
        dialect cannot restrict it to string values.
    """
    clauses = []
    remaining: List[Filter] = []
    for f in filters:
        values = _string_values(f)
        if values is None:
            remaining.append(f)
            continue

        parts = tuple(f.field.split("."))
        text = Document.data[parts].as_string()
        clauses.append(text == values[0] if f.op == "eq" else text.in_(values))

        guard = _string_type_guard(dialect, parts)
        if guard is None:
            remaining.append(f)
        else:
            clauses.append(guard)
    return clauses, remaining


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------

class SQLAlchemyDocumentStore:
    """
    DocumentStore backed by the `document` table.

    Collection scoping, primary-key lookups and string eq / in filters
    run in SQL as JSON-path predicates. Other operators are checked
    against the decoded JSON. When every filter ran in SQL and no sort
    is requested, offset and limit are applied by the database too.

    Transactions are bound to the calling thread: every store call made
    from the thread running `with_transaction` joins that transaction.
    Calls from other threads (e.g. concurrent lookups) use their own
    short-lived sessions.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        unique_keys: Optional[Dict[str, Callable[[Mapping[str, Any]], Optional[str]]]] = None,
    ):
        """
        Args:
            session_factory: SQLAlchemy sessionmaker
            unique_keys: collection -> function deriving a uniqueness key
                from a document (None means "not constrained")
        """
        self._session_factory = session_factory
        self._unique_keys = dict(unique_keys or {})
        self._local = threading.local()

    # -- session handling ---------------------------------------------------

    def _transaction_session(self) -> Optional[Session]:
        return getattr(self._local, "session", None)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        active = self._transaction_session()
        if active is not None:
            yield active
            return

        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def with_transaction(self, fn: Callable[[], T]) -> T:
        """
        Run `fn` inside one database transaction.

        Commits when `fn` returns, rolls back when it raises. Nested calls
        join the outer transaction.
        """
        if self._transaction_session() is not None:
            return fn()

        db = self._session_factory()
        self._local.session = db
        try:
            result = fn()
            db.commit()
            return result
        except Exception:
            db.rollback()
            raise
        finally:
            self._local.session = None
            db.close()

    def _unique_key(self, collection: str, doc: Mapping[str, Any]) -> Optional[str]:
        key_fn = self._unique_keys.get(collection)
        return key_fn(doc) if key_fn else None

    def _flush(self, db: Session, collection: str, unique_key: Optional[str]) -> None:
        try:
            db.flush()
        except IntegrityError as e:
            logger.warning(f"Unique key violation in {collection}: {unique_key}")
            raise DuplicateDocumentError(collection, unique_key) from e

    # -- reads ----------------------------------------------------------------

    def find_by_id(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        if doc_id is None:
            return None
        with self._session() as db:
            row = db.get(Document, (collection, str(doc_id)))
            return copy.deepcopy(row.data) if row is not None else None

    def find_one(self, collection: str, filter: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        filters = [Filter(field, "eq", value) for field, value in filter.items()]
        found = self.find_with_filters(collection, filters, QueryOptions(limit=1))
        return found[0] if found else None

    def find_with_filters(
        self,
        collection: str,
        filters: List[Filter],
        options: Optional[QueryOptions] = None,
    ) -> List[Dict[str, Any]]:
        options = options or QueryOptions()
        start = max(options.offset, 0)
        end = start + options.limit if options.limit is not None else None

        with self._session() as db:
            clauses, remaining = split_filters(filters, db.get_bind().dialect.name)
            stmt = (
                select(Document)
                .where(Document.collection == collection, *clauses)
                .order_by(Document.created_at, Document.id)
            )

            if not remaining and not options.sort_by:
                stmt = stmt.offset(start)
                if options.limit is not None:
                    stmt = stmt.limit(options.limit)
                return [copy.deepcopy(row.data) for row in db.execute(stmt).scalars()]

            docs = []
            for row in db.execute(stmt).scalars():
                if matches(row.data, remaining):
                    docs.append(copy.deepcopy(row.data))
                    # Insertion order is final without a sort
                    if not options.sort_by and end is not None and len(docs) >= end:
                        break

        if options.sort_by:
            docs.sort(
                key=lambda doc: _sort_value(get_path(doc, options.sort_by)),
                reverse=options.descending,
            )
        return docs[start:end]

    # -- writes ---------------------------------------------------------------

    def create(self, collection: str, doc: Mapping[str, Any]) -> Dict[str, Any]:
        data = to_jsonable(dict(doc))
        data.setdefault("id", uuid.uuid4().hex)
        data["id"] = str(data["id"])
        unique_key = self._unique_key(collection, data)

        with self._session() as db:
            db.add(Document(
                collection=collection,
                id=data["id"],
                data=data,
                unique_key=unique_key,
            ))
            self._flush(db, collection, unique_key)

        return copy.deepcopy(data)

    def update(self, collection: str, doc_id: str, patch: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        with self._session() as db:
            row = db.get(Document, (collection, str(doc_id)))
            if row is None:
                return None

            data = {**row.data, **to_jsonable(dict(patch))}
            data["id"] = row.id
            unique_key = self._unique_key(collection, data)
            # Reassign so the JSON column is marked dirty
            row.data = data
            row.unique_key = unique_key
            self._flush(db, collection, unique_key)

        return copy.deepcopy(data)
