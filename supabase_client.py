"""Supabase backend: PostgREST for rows, the realtime socket for change events."""
import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Set
from urllib.parse import urlencode, urlsplit, urlunsplit

import httpx
import websockets
from websockets.exceptions import WebSocketException

from errors import PolicyError, TransportError
from resource_client import (
    ChangeCallback,
    ChangeEvent,
    OPERATIONS,
    Order,
    RemoteResourceClient,
    Row,
    Subscription,
)

logger = logging.getLogger("shelter.supabase")

DEFAULT_SCHEMA = "public"
DEFAULT_TIMEOUT_SECONDS = 8.0
HEARTBEAT_INTERVAL_SECONDS = 25.0
RECONNECT_DELAY_SECONDS = 2.0


@dataclass(frozen=True)
class SupabaseConfig:
    url: str = ""
    api_key: str = ""
    schema: str = DEFAULT_SCHEMA
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS

    @property
    def configured(self) -> bool:
        return bool(self.url and self.api_key)

    @classmethod
    def from_mapping(cls, value: Optional[Mapping[str, Any]]) -> "SupabaseConfig":
        raw = value or {}
        url = str(raw.get("url", "") or "").strip().rstrip("/")
        api_key = str(raw.get("api_key", "") or "").strip()
        schema = str(raw.get("schema", "") or "").strip() or DEFAULT_SCHEMA
        try:
            timeout_seconds = float(raw.get("timeout_seconds", DEFAULT_TIMEOUT_SECONDS))
        except (TypeError, ValueError):
            timeout_seconds = DEFAULT_TIMEOUT_SECONDS
        return cls(url=url, api_key=api_key, schema=schema, timeout_seconds=max(1.0, timeout_seconds))

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        return cls.from_mapping({
            "url": os.environ.get("SUPABASE_URL", ""),
            "api_key": os.environ.get("SUPABASE_KEY", ""),
            "schema": os.environ.get("SUPABASE_SCHEMA", DEFAULT_SCHEMA),
            "timeout_seconds": os.environ.get("REQUEST_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS),
        })


def _filter_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def build_query(
    filters: Optional[Mapping[str, Any]] = None,
    order: Optional[Order] = None,
    limit: Optional[int] = None,
) -> List[tuple]:
    params = [("select", "*")]
    for column, value in (filters or {}).items():
        op = "is" if value is None else "eq"
        params.append((column, f"{op}.{_filter_value(value)}"))
    if order:
        column, descending = order
        params.append(("order", f"{column}.{'desc' if descending else 'asc'}"))
    if limit is not None:
        params.append(("limit", str(int(limit))))
    return params


def error_message(response: httpx.Response) -> str:
    """PostgREST reports {code, message, details, hint}; keep its message verbatim."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    text = response.text.strip()
    return text or f"{response.status_code} {response.reason_phrase}"


class SupabaseResourceClient(RemoteResourceClient):
    def __init__(self, config: SupabaseConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        if not config.configured:
            raise ValueError("Supabase backend selected but SUPABASE_URL or SUPABASE_KEY is missing.")
        self.config = config
        headers = {
            "apikey": config.api_key,
            "Authorization": f"Bearer {config.api_key}",
            "Accept-Profile": config.schema,
            "Content-Profile": config.schema,
        }
        self._http = httpx.AsyncClient(
            base_url=f"{config.url}/rest/v1",
            headers=headers,
            timeout=config.timeout_seconds,
            transport=transport,
        )
        self.realtime = RealtimeChannel(config)

    async def _request(self, method: str, collection: str, *, params=None, payload=None, prefer: str = "") -> Any:
        headers = {"Prefer": prefer} if prefer else {}
        try:
            response = await self._http.request(method, f"/{collection}", params=params, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransportError(f"{collection}: request timed out", collection=collection) from exc
        except httpx.TransportError as exc:
            raise TransportError(f"{collection}: {exc}", collection=collection) from exc

        if response.status_code >= 500:
            raise TransportError(error_message(response), collection=collection)
        if response.status_code >= 400:
            raise PolicyError(error_message(response), collection=collection)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise TransportError(f"{collection}: backend returned a non-JSON payload", collection=collection) from exc

    async def select(self, collection, filters=None, order=None, limit=None) -> List[Row]:
        rows = await self._request("GET", collection, params=build_query(filters, order, limit))
        return list(rows or [])

    async def insert(self, collection, record) -> Row:
        rows = await self._request("POST", collection, payload=[dict(record)], prefer="return=representation")
        if not rows:
            raise PolicyError(f"Insert into {collection} returned no row", collection=collection)
        return rows[0]

    async def update(self, collection, record_id, patch) -> None:
        rows = await self._request(
            "PATCH", collection,
            params=[("id", f"eq.{record_id}")],
            payload=dict(patch),
            prefer="return=representation",
        )
        # row-level security filters silently; zero rows back means the write was refused
        if not rows:
            raise PolicyError(f"No row with id {record_id} in {collection} could be updated", collection=collection)

    async def delete(self, collection, record_id) -> None:
        rows = await self._request(
            "DELETE", collection,
            params=[("id", f"eq.{record_id}")],
            prefer="return=representation",
        )
        if not rows:
            raise PolicyError(f"No row with id {record_id} in {collection} could be deleted", collection=collection)

    def subscribe_changes(self, collection, callback) -> Subscription:
        return self.realtime.subscribe(collection, callback)

    async def close(self) -> None:
        await self.realtime.stop()
        await self._http.aclose()


# --- Realtime ---

def build_websocket_url(config: SupabaseConfig) -> str:
    parsed = urlsplit(config.url)
    scheme = "wss" if parsed.scheme.casefold() == "https" else "ws"
    query = urlencode({"apikey": config.api_key, "vsn": "1.0.0"})
    return urlunsplit((scheme, parsed.netloc, "/realtime/v1/websocket", query, ""))


def topic_for(schema: str, table: str) -> str:
    return f"realtime:{schema}:{table}"


def join_message(schema: str, table: str, ref: str) -> Dict[str, Any]:
    return {
        "topic": topic_for(schema, table),
        "event": "phx_join",
        "payload": {
            "config": {
                "broadcast": {"self": False},
                "presence": {"key": ""},
                "postgres_changes": [{"event": "*", "schema": schema, "table": table}],
                "private": False,
            }
        },
        "ref": ref,
    }


def parse_change_frame(frame: Any) -> Optional[ChangeEvent]:
    """Turn a realtime frame into a ChangeEvent, or None for replies, heartbeats and noise."""
    if isinstance(frame, (str, bytes)):
        try:
            frame = json.loads(frame)
        except ValueError:
            return None
    if not isinstance(frame, dict) or frame.get("event") != "postgres_changes":
        return None
    payload = frame.get("payload")
    if not isinstance(payload, dict):
        return None
    data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
    operation = str(data.get("type") or data.get("eventType") or "").strip().lower()
    table = str(data.get("table") or "").strip()
    if operation not in OPERATIONS or not table:
        return None
    record = data.get("record") or data.get("new") or data.get("old_record") or data.get("old") or {}
    record_id = record.get("id") if isinstance(record, dict) else None
    return ChangeEvent(collection=table, operation=operation, record_id=str(record_id) if record_id is not None else None)


class RealtimeChannel:
    """One websocket shared by every table subscription, rejoined after reconnects."""

    def __init__(self, config: SupabaseConfig):
        self.config = config
        self._listeners: Dict[str, Dict[int, ChangeCallback]] = {}
        self._next_token = 0
        self._next_ref_value = 0
        self._socket = None
        self._task: Optional[asyncio.Task] = None
        self._sends: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, table: str, callback: ChangeCallback) -> Subscription:
        token = self._next_token
        self._next_token += 1
        listeners = self._listeners.setdefault(table, {})
        first = not listeners
        listeners[token] = callback
        if first:
            self._schedule(self._join(table))
        self._ensure_running()

        def release():
            table_listeners = self._listeners.get(table, {})
            table_listeners.pop(token, None)
            if not table_listeners:
                self._listeners.pop(table, None)
                self._schedule(self._leave(table))

        return Subscription(table, release)

    def _ensure_running(self) -> None:
        if self.running:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; realtime socket starts with the next subscription")
            return
        self._task = loop.create_task(self._run())

    def _schedule(self, coro) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return
        task = loop.create_task(coro)
        self._sends.add(task)
        task.add_done_callback(self._send_finished)

    def _send_finished(self, task: asyncio.Task) -> None:
        self._sends.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Realtime send failed: %s", exc)

    def _next_ref(self) -> str:
        self._next_ref_value += 1
        return str(self._next_ref_value)

    async def _send(self, message: Dict[str, Any]) -> None:
        socket = self._socket
        if socket is None:
            return
        await socket.send(json.dumps(message, separators=(",", ":")))

    async def _join(self, table: str) -> None:
        await self._send(join_message(self.config.schema, table, self._next_ref()))

    async def _leave(self, table: str) -> None:
        await self._send({
            "topic": topic_for(self.config.schema, table),
            "event": "phx_leave",
            "payload": {},
            "ref": self._next_ref(),
        })

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(HEARTBEAT_INTERVAL_SECONDS)
            await self._send({"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": self._next_ref()})

    def _dispatch(self, message: Any) -> None:
        event = parse_change_frame(message)
        if event is None:
            return
        for callback in list(self._listeners.get(event.collection, {}).values()):
            try:
                callback(event)
            except Exception:
                logger.exception("Realtime listener for %s failed", event.collection)

    async def _run(self) -> None:
        url = build_websocket_url(self.config)
        while self._listeners:
            try:
                async with websockets.connect(url) as socket:
                    self._socket = socket
                    logger.info("Realtime connected; joining %s", ", ".join(self._listeners))
                    for table in list(self._listeners):
                        await self._join(table)
                    heartbeat = asyncio.create_task(self._heartbeat())
                    try:
                        async for message in socket:
                            self._dispatch(message)
                    finally:
                        heartbeat.cancel()
                        self._socket = None
            except (OSError, WebSocketException) as exc:
                logger.warning("Realtime socket error: %s", exc)
            if self._listeners:
                logger.info("Realtime disconnected; reconnecting in %.0fs", RECONNECT_DELAY_SECONDS)
                await asyncio.sleep(RECONNECT_DELAY_SECONDS)

    async def stop(self) -> None:
        self._listeners.clear()
        for send in list(self._sends):
            send.cancel()
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
