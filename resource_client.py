"""Backend access for every shelter collection.

RemoteResourceClient is the boundary to the hosted database. All calls are
coroutines and fail with TransportError or PolicyError; there is no
transaction spanning collections. InMemoryResourceClient keeps the rows in
process (optionally persisted to a JSON state file) and is the default
backend for local runs and tests.
"""
import copy
import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel

from errors import PolicyError

logger = logging.getLogger("shelter.resource_client")

Row = Dict[str, Any]
Order = Tuple[str, bool]  # (column, descending)

OPERATIONS = ("insert", "update", "delete")


class ChangeEvent(BaseModel):
    collection: str
    operation: str
    record_id: Optional[str] = None


ChangeCallback = Callable[[ChangeEvent], None]


class Subscription:
    """Handle returned by subscribe_changes. unsubscribe() may be called any number of times."""

    def __init__(self, collection: str, release: Callable[[], None]):
        self.collection = collection
        self._release: Optional[Callable[[], None]] = release

    @property
    def active(self) -> bool:
        return self._release is not None

    def unsubscribe(self) -> None:
        release, self._release = self._release, None
        if release is not None:
            release()


class RemoteResourceClient(ABC):
    @abstractmethod
    async def select(
        self,
        collection: str,
        filters: Optional[Mapping[str, Any]] = None,
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        ...

    @abstractmethod
    async def insert(self, collection: str, record: Mapping[str, Any]) -> Row:
        ...

    @abstractmethod
    async def update(self, collection: str, record_id: str, patch: Mapping[str, Any]) -> None:
        ...

    @abstractmethod
    async def delete(self, collection: str, record_id: str) -> None:
        ...

    @abstractmethod
    def subscribe_changes(self, collection: str, callback: ChangeCallback) -> Subscription:
        ...

    async def close(self) -> None:
        return None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _sort_key(value: Any):
    # None sorts before everything; mixed types fall back to their string form
    if value is None:
        return (0, "")
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (1, value)
    return (2, str(value))


def sort_rows(rows: List[Row], order: Optional[Order]) -> List[Row]:
    if not order:
        return rows
    column, descending = order
    return sorted(rows, key=lambda r: _sort_key(r.get(column)), reverse=descending)


class InMemoryResourceClient(RemoteResourceClient):
    """Process-local backend. Rows are copied in and out so callers never share state with it."""

    def __init__(self, state_file: Optional[str] = None, seed: Optional[Mapping[str, List[Row]]] = None):
        self.state_file = state_file
        self.collections: Dict[str, List[Row]] = {}
        # non-row state persisted alongside the collections (activity log)
        self.meta: Dict[str, Any] = {}
        self._subscribers: Dict[str, Dict[int, ChangeCallback]] = {}
        self._next_token = 0
        if state_file:
            self.load_state()
        if seed:
            for name, rows in seed.items():
                if not self.collections.get(name):
                    self.collections[name] = [self._stamp(dict(r)) for r in rows]

    # --- Persistence ---

    def load_state(self) -> None:
        if not self.state_file or not os.path.exists(self.state_file):
            return
        with open(self.state_file, "r", encoding="utf-8") as f:
            try:
                data = json.load(f)
            except ValueError:
                logger.warning("State file %s is not valid JSON; starting empty", self.state_file)
                return
        if not isinstance(data, dict):
            return
        collections = data.get("collections") if isinstance(data.get("collections"), dict) else {}
        meta = data.get("meta", {})
        self.meta = dict(meta) if isinstance(meta, dict) else {}
        self.collections = {
            name: [dict(r) for r in rows if isinstance(r, dict)]
            for name, rows in collections.items()
            if isinstance(rows, list)
        }

    def save_state(self) -> None:
        if not self.state_file:
            return
        directory = os.path.dirname(self.state_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.state_file, "w", encoding="utf-8") as f:
            json.dump({"collections": self.collections, "meta": self.meta}, f, indent=2)

    def reset(self, seed: Optional[Mapping[str, List[Row]]] = None) -> None:
        self.collections = {}
        for name, rows in (seed or {}).items():
            self.collections[name] = [self._stamp(dict(r)) for r in rows]

    # --- Queries ---

    def _stamp(self, row: Row) -> Row:
        row.setdefault("id", str(uuid4()))
        row.setdefault("created_at", _now_iso())
        return row

    def _find(self, collection: str, record_id: str) -> Row:
        for row in self.collections.get(collection, []):
            if str(row.get("id")) == str(record_id):
                return row
        raise PolicyError(f"No row with id {record_id} in {collection}", collection=collection)

    async def select(self, collection, filters=None, order=None, limit=None):
        rows = [
            r for r in self.collections.get(collection, [])
            if all(r.get(k) == v for k, v in (filters or {}).items())
        ]
        rows = sort_rows(rows, order)
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def insert(self, collection, record):
        row = self._stamp(copy.deepcopy(dict(record)))
        table = self.collections.setdefault(collection, [])
        if any(str(r.get("id")) == str(row["id"]) for r in table):
            raise PolicyError(f"duplicate key value violates unique constraint \"{collection}_pkey\"", collection=collection)
        table.append(row)
        self.save_state()
        self._notify(ChangeEvent(collection=collection, operation="insert", record_id=str(row["id"])))
        return copy.deepcopy(row)

    async def update(self, collection, record_id, patch):
        row = self._find(collection, record_id)
        changes = {k: copy.deepcopy(v) for k, v in patch.items() if k != "id"}
        row.update(changes)
        self.save_state()
        self._notify(ChangeEvent(collection=collection, operation="update", record_id=str(record_id)))

    async def delete(self, collection, record_id):
        row = self._find(collection, record_id)
        self.collections[collection].remove(row)
        self.save_state()
        self._notify(ChangeEvent(collection=collection, operation="delete", record_id=str(record_id)))

    # --- Change notifications ---

    def subscribe_changes(self, collection, callback):
        token = self._next_token
        self._next_token += 1
        self._subscribers.setdefault(collection, {})[token] = callback

        def release():
            self._subscribers.get(collection, {}).pop(token, None)

        return Subscription(collection, release)

    def subscriber_count(self, collection: Optional[str] = None) -> int:
        if collection is not None:
            return len(self._subscribers.get(collection, {}))
        return sum(len(s) for s in self._subscribers.values())

    def _notify(self, event: ChangeEvent) -> None:
        for callback in list(self._subscribers.get(event.collection, {}).values()):
            try:
                callback(event)
            except Exception:
                # the write is already committed
                logger.exception("Change listener for %s failed", event.collection)
