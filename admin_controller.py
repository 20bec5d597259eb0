"""State holder behind every admin section.

A controller loads the collections its section shows, composes them into the
list the page renders, keeps that list fresh from the change feed, and runs
add/edit/delete/status actions against the backend. Lifecycle:

    Idle -> Loading -> Ready | LoadError
    Ready -> Mutating -> Ready | MutationError
    (any) -> Idle on unmount

A load is all-or-nothing. A mutation that needs several collections is not
atomic: when some writes land and others fail the caller gets a
PartialFailureError naming both sides, and nothing is rolled back. When none
land the caller gets WriteFailedError, or the backend error itself for a
single write.
"""
import asyncio
import logging
from datetime import date
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, NamedTuple, Optional, Sequence

from change_feed import ChangeFeedCoordinator
from errors import (
    ControllerBusyError,
    NotFoundError,
    PartialFailureError,
    ResourceError,
    ShelterError,
    TransportError,
    ValidationError,
    WriteFailedError,
)
from reconciler import (
    ADOPT_TABLE,
    RESCUED_TABLE,
    Diagnostic,
    Entity,
    Source,
    entity_key,
    entity_patch_for,
    merge,
    parse_status,
    status_targets,
)
from resource_client import Order, RemoteResourceClient, Row
from validators import ANIMAL_FORM, validate_form

logger = logging.getLogger("shelter.admin")

DEFAULT_TIMEOUT_SECONDS = 8.0


class ControllerState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    LOAD_ERROR = "load_error"
    MUTATING = "mutating"
    MUTATION_ERROR = "mutation_error"


class CollectionQuery(NamedTuple):
    name: str
    order: Optional[Order] = ("created_at", True)


class Write(NamedTuple):
    collection: str
    run: Callable[[], Awaitable[Any]]


async def call_with_deadline(
    collection: str,
    run: Callable[[], Awaitable[Any]],
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    retries: int = 0,
) -> Any:
    """Await one backend call under a deadline.

    A missed deadline is reported as TransportError. Only TransportError is
    retried, and only `retries` times; callers pass retries=0 for writes.
    """
    attempt = 0
    while True:
        try:
            return await asyncio.wait_for(run(), timeout_seconds)
        except asyncio.TimeoutError as exc:
            error = TransportError(f"{collection}: no response within {timeout_seconds:g}s", collection=collection)
            error.__cause__ = exc
        except TransportError as exc:
            if exc.collection is None:
                exc.collection = collection
            error = exc
        if attempt >= retries:
            raise error
        attempt += 1
        logger.info("Retrying %s after: %s", collection, error.message)


class AdminListController:
    def __init__(
        self,
        name: str,
        client: RemoteResourceClient,
        queries: Sequence[CollectionQuery],
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        read_retries: int = 1,
        coalesce_seconds: float = 0.0,
    ):
        if not queries:
            raise ValueError("a controller needs at least one collection")
        self.name = name
        self.client = client
        self.queries = list(queries)
        self.timeout_seconds = timeout_seconds
        self.read_retries = read_retries
        self.state = ControllerState.IDLE
        self.mounted = False
        self.items: List[Any] = []
        self.rows: Dict[str, List[Row]] = {}
        self.last_error: Optional[ShelterError] = None
        self._issued = 0
        self._applied = 0
        self._loading: Optional[asyncio.Future] = None
        self.feed = ChangeFeedCoordinator(
            client, [q.name for q in self.queries], self.reload, coalesce_seconds=coalesce_seconds
        )

    @property
    def primary(self) -> str:
        return self.queries[0].name

    @property
    def busy(self) -> bool:
        return self.state in (ControllerState.LOADING, ControllerState.MUTATING)

    def compose(self, rows: Dict[str, List[Row]]) -> List[Any]:
        return rows[self.primary]

    # --- Backend calls ---

    async def _call(self, collection: str, run: Callable[[], Awaitable[Any]], retries: int = 0) -> Any:
        return await call_with_deadline(collection, run, self.timeout_seconds, retries=retries)

    async def _fetch_all(self) -> Dict[str, List[Row]]:
        def reader(q: CollectionQuery):
            return lambda: self.client.select(q.name, order=q.order)

        results = await asyncio.gather(
            *(self._call(q.name, reader(q), retries=self.read_retries) for q in self.queries),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return {q.name: rows for q, rows in zip(self.queries, results)}

    # --- Loading ---

    async def mount(self) -> None:
        if self.mounted:
            return
        self.mounted = True
        await self.reload()

    def unmount(self) -> None:
        self.feed.stop()
        self.mounted = False
        self.state = ControllerState.IDLE
        self.items = []
        self.rows = {}

    async def reload(self) -> None:
        if not self.mounted:
            return
        self._issued += 1
        seq = self._issued
        previous = self.state
        if self.state != ControllerState.MUTATING:
            self.state = ControllerState.LOADING
        loading = self._loading = asyncio.get_running_loop().create_future()
        try:
            await self._load(seq, previous)
        finally:
            if not loading.done():
                loading.set_result(None)
            if self._loading is loading:
                self._loading = None

    async def _load(self, seq: int, previous: ControllerState) -> None:
        try:
            rows = await self._fetch_all()
            items = self.compose(rows)
        except asyncio.CancelledError:
            if self.state == ControllerState.LOADING and previous != ControllerState.LOADING:
                self.state = previous
            self.feed.mark_dirty()
            raise
        except ResourceError as exc:
            logger.warning("Loading %s failed: %s", self.name, exc)
            self._load_failed(seq, exc)
            return
        except Exception as exc:
            logger.exception("Loading %s failed on an unreadable response", self.name)
            error = ResourceError(f"{self.name} could not be read: {exc}")
            error.__cause__ = exc
            self._load_failed(seq, error)
            return
        # an older load finishing late must not replace a newer result
        if seq <= self._applied or not self.mounted:
            return
        self._applied = seq
        self.rows = rows
        self.items = items
        if self.state != ControllerState.MUTATING:
            self.state = ControllerState.READY
            self.last_error = None
        self.feed.start()

    def _load_failed(self, seq: int, error: ResourceError) -> None:
        if seq <= self._applied or not self.mounted:
            return
        self._applied = seq
        self.items = []
        self.rows = {}
        self.last_error = error
        if self.state != ControllerState.MUTATING:
            self.state = ControllerState.LOAD_ERROR

    async def ensure_fresh(self) -> None:
        """Make `items` current before a page renders.

        A load already in flight is awaited rather than started again.
        """
        if not self.mounted:
            await self.mount()
            return
        if self.state == ControllerState.LOADING and self._loading is not None:
            await self._wait_for_load()
            if self.state != ControllerState.IDLE:
                return
        if self.state in (ControllerState.IDLE, ControllerState.LOAD_ERROR):
            await self.reload()
        else:
            await self.feed.flush()

    async def _wait_for_load(self) -> None:
        loading = self._loading
        if loading.get_loop() is not asyncio.get_running_loop():
            # started on an event loop that has since gone away
            self._loading = None
            self.state = ControllerState.IDLE
            return
        await asyncio.shield(loading)

    # --- Mutations ---

    async def check_writable(self) -> None:
        """Refuse changes while busy or after a failed load."""
        if not self.mounted:
            await self.mount()
        if self.busy:
            raise ControllerBusyError(f"{self.name} is busy; wait for the current action to finish.")
        if self.state == ControllerState.LOAD_ERROR:
            raise ControllerBusyError(
                f"{self.name} could not be loaded ({self.last_error}); reload before making changes."
            )

    async def mutate(self, action: str, writes: Sequence[Write], sequential: bool = False) -> List[Any]:
        """Run the writes one action needs and reload on success.

        Parallel by default. With sequential=True the writes run in order and
        the first failure stops the rest, which are reported as skipped.
        """
        await self.check_writable()
        self.state = ControllerState.MUTATING
        self.last_error = None

        succeeded: List[str] = []
        failed: Dict[str, ResourceError] = {}
        skipped: List[str] = []
        results: List[Any] = []
        try:
            if sequential:
                for index, write in enumerate(writes):
                    try:
                        results.append(await self._call(write.collection, write.run))
                        succeeded.append(write.collection)
                    except ResourceError as exc:
                        failed[write.collection] = exc
                        skipped = [w.collection for w in writes[index + 1:]]
                        break
            else:
                outcomes = await asyncio.gather(
                    *(self._call(w.collection, w.run) for w in writes), return_exceptions=True
                )
                for write, outcome in zip(writes, outcomes):
                    if isinstance(outcome, ResourceError):
                        failed[write.collection] = outcome
                    elif isinstance(outcome, BaseException):
                        raise outcome
                    else:
                        succeeded.append(write.collection)
                        results.append(outcome)
        except BaseException:
            self.state = ControllerState.MUTATION_ERROR
            raise

        if failed:
            error: ShelterError
            if succeeded:
                error = PartialFailureError(action, succeeded, failed, skipped)
            elif len(failed) == 1 and not skipped:
                error = next(iter(failed.values()))
            else:
                error = WriteFailedError(action, failed, skipped)
            self.state = ControllerState.MUTATION_ERROR
            self.last_error = error
            logger.warning("%s on %s failed: %s", action, self.name, error)
            raise error

        self.state = ControllerState.READY
        await self.reload()
        return results

    # --- Single collection helpers ---

    def find(self, record_id: str) -> Optional[Row]:
        return next((r for r in self.rows.get(self.primary, []) if str(r.get("id")) == str(record_id)), None)

    async def insert(self, record: Mapping[str, Any], action: str = "Create") -> Row:
        results = await self.mutate(action, [Write(self.primary, lambda: self.client.insert(self.primary, record))])
        return results[0]

    async def update(self, record_id: str, patch: Mapping[str, Any], action: str = "Update") -> None:
        await self.mutate(action, [Write(self.primary, lambda: self.client.update(self.primary, record_id, patch))])

    async def delete(self, record_id: str, action: str = "Delete") -> None:
        await self.mutate(action, [Write(self.primary, lambda: self.client.delete(self.primary, record_id))])


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class AnimalsController(AdminListController):
    """Animals section: the reconciled view over adopt_animals and rescued_animals."""

    def __init__(self, client: RemoteResourceClient, **kwargs):
        super().__init__(
            "animals",
            client,
            [CollectionQuery(ADOPT_TABLE), CollectionQuery(RESCUED_TABLE)],
            **kwargs,
        )
        self.diagnostics: List[Diagnostic] = []

    def compose(self, rows: Dict[str, List[Row]]) -> List[Entity]:
        result = merge(rows[ADOPT_TABLE], rows[RESCUED_TABLE])
        self.diagnostics = result.diagnostics
        return result.entities

    @property
    def entities(self) -> List[Entity]:
        return self.items

    def get(self, key: str) -> Entity:
        wanted = entity_key(key)
        entity = next((e for e in self.items if e.key == wanted), None)
        if entity is None:
            raise NotFoundError(f"No animal named {key!r}")
        return entity

    def entity_for_record(self, record_id: Any) -> Optional[Entity]:
        if record_id is None:
            return None
        return next(
            (e for e in self.items if any(p.record_id == str(record_id) for p in e.provenance)),
            None,
        )

    async def add_animal(self, data: Mapping[str, Any], add_to: str = "rescued") -> List[Row]:
        await self.check_writable()
        form = dict(data)
        form["add_to"] = add_to
        form.setdefault("current_status", "Available")
        form.setdefault("rescue_date", date.today().isoformat())
        errors = validate_form(ANIMAL_FORM, form)
        key = entity_key(form.get("name"))
        targets = {"adopt": [ADOPT_TABLE], "rescued": [RESCUED_TABLE], "both": [ADOPT_TABLE, RESCUED_TABLE]}.get(add_to, [])
        if key and "name" not in errors:
            existing = next((e for e in self.items if e.key == key), None)
            taken = [t for t in targets if existing is not None and existing.record_id(Source(t))]
            if taken:
                errors["name"] = f"An animal named {existing.name} is already listed in {', '.join(taken)}"
        if errors:
            raise ValidationError(errors)

        story = _blank_to_none(form.get("rescue_story"))
        age = _blank_to_none(form.get("age"))
        record = {
            "name": form["name"].strip(),
            "species": form["species"],
            "breed": _blank_to_none(form.get("breed")),
            "age": int(age) if age is not None else None,
            "gender": _blank_to_none(form.get("gender")),
            "rescue_date": form["rescue_date"],
            "health_status": _blank_to_none(form.get("health_status")),
            "current_status": form["current_status"],
            "image_url": _blank_to_none(form.get("image_url")),
        }
        # the story lands in each table's own column(s)
        rows = {t: dict(record, **entity_patch_for(Source(t), {"story": story})) for t in targets}
        writes = [
            Write(table, lambda table=table: self.client.insert(table, rows[table]))
            for table in targets
        ]
        return await self.mutate(f"Add {record['name']}", writes)

    async def set_status(self, key: str, status: Any) -> None:
        await self.check_writable()
        value = parse_status(status).value
        entity = self.get(key)
        writes = [
            Write(collection, lambda c=collection, r=record_id, p=patch: self.client.update(c, r, p))
            for collection, record_id, patch in status_targets(entity, value)
        ]
        await self.mutate(f"Status change of {entity.name} to {value}", writes)

    async def edit_animal(self, key: str, patch: Mapping[str, Any]) -> None:
        await self.check_writable()
        entity = self.get(key)
        changes = {k: _blank_to_none(v) for k, v in patch.items()}
        rules = tuple(r for r in ANIMAL_FORM if r.field in changes or (r.field == "rescue_story" and "story" in changes))
        check = dict(changes)
        if "story" in check:
            check["rescue_story"] = check["story"]
        errors = validate_form(rules, check)
        new_key = entity_key(changes.get("name")) if "name" in changes else entity.key
        if new_key != entity.key and any(e.key == new_key for e in self.items):
            errors["name"] = f"Another animal is already named {changes['name']}"
        if errors:
            raise ValidationError(errors)
        if changes.get("age") is not None:
            changes["age"] = int(changes["age"])

        writes = [
            Write(
                p.source.value,
                lambda p=p: self.client.update(p.source.value, p.record_id, entity_patch_for(p.source, changes)),
            )
            for p in entity.provenance
        ]
        await self.mutate(f"Edit {entity.name}", writes)

    async def delete_animal(self, key: str) -> None:
        await self.check_writable()
        entity = self.get(key)
        writes = [
            Write(p.source.value, lambda p=p: self.client.delete(p.source.value, p.record_id))
            for p in entity.provenance
        ]
        await self.mutate(f"Delete {entity.name}", writes)
