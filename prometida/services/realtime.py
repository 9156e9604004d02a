"""Realtime change feed for the tables both partners write to.

Subscription callbacks run on the realtime client's receive path, so they do
nothing except enqueue a ``ChangeEvent``. A single consumer task applies the
events through ``apply_change``, which is the only place that merges remote
rows into a store collection.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError as SchemaError

from ..errors import RemoteError

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"

# Table name -> change kinds the app listens for.
SHARED_TABLES: Dict[str, Tuple[str, ...]] = {
    "notes": (INSERT, DELETE),
    "messages": (INSERT, UPDATE, DELETE),
}


@dataclass(frozen=True)
class ChangeEvent:
    """A row change pushed by the backend."""

    table: str
    kind: str
    record: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, table: str, kind: str, payload: Any) -> "ChangeEvent":
        data = payload.get("data", payload) if isinstance(payload, dict) else {}
        if not isinstance(data, dict):
            data = {}
        kind = str(data.get("type") or data.get("eventType") or kind).upper()
        if kind == DELETE:
            record = data.get("old_record") or data.get("old") or {}
        else:
            record = data.get("record") or data.get("new") or {}
        return cls(table=table, kind=kind, record=dict(record))

    @property
    def record_id(self) -> Optional[str]:
        value = self.record.get("id")
        return None if value is None else str(value)


def apply_change(store: Any, event: ChangeEvent) -> bool:
    """Merge one change into the store. Returns True if local state changed.

    Inserts of a known id are ignored, deletes of an unknown id are no-ops and
    updates only touch entries already present.
    """

    if not getattr(store, "is_authenticated", False):
        logger.debug("realtime.%s.dropped_signed_out", event.table)
        return False

    collection = store.collection(event.table)
    if collection is None:
        logger.debug("realtime.%s.unknown_table", event.table)
        return False

    record_id = event.record_id
    if record_id is None:
        logger.warning("realtime.%s.%s.missing_id", event.table, event.kind.lower())
        return False

    if event.kind == DELETE:
        changed = collection.remove(record_id) is not None
    elif event.kind in (INSERT, UPDATE):
        if event.kind == INSERT and collection.contains(record_id):
            return False
        if event.kind == UPDATE and not collection.contains(record_id):
            return False
        try:
            record = collection.model.model_validate(event.record)
        except SchemaError:
            logger.warning("realtime.%s.invalid_row id=%s", event.table, record_id, exc_info=True)
            return False
        if event.kind == INSERT:
            changed = collection.add(record)
        else:
            changed = collection.replace(record_id, record)
    else:
        logger.debug("realtime.%s.ignored_kind %s", event.table, event.kind)
        return False

    if changed:
        store.collection_changed(collection)
    return changed


class RealtimeListener:
    """Owns the realtime channels for one signed-in store."""

    def __init__(self, gateway: Any, store: Any, tables: Optional[Dict[str, Tuple[str, ...]]] = None) -> None:
        self._gateway = gateway
        self._store = store
        self._tables = tables or SHARED_TABLES
        self._channels: List[Any] = []
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._consumer is not None

    async def start(self) -> None:
        if self._consumer is not None:
            return

        self._queue = asyncio.Queue()
        try:
            for table, kinds in self._tables.items():
                channel = await self._gateway.channel(f"{table}-changes")
                for kind in kinds:
                    channel.on_postgres_changes(kind, schema="public", table=table, callback=self._handler(table, kind))
                await channel.subscribe()
                self._channels.append(channel)
        except RemoteError:
            await self._close_channels()
            raise
        except Exception as exc:
            await self._close_channels()
            raise RemoteError(f"Realtime subscription failed: {exc}") from exc

        self._consumer = asyncio.get_running_loop().create_task(self._consume())
        logger.info("realtime.started tables=%s", ",".join(self._tables))

    async def stop(self) -> None:
        """Close every channel and stop the consumer. Safe to call twice."""

        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            consumer.cancel()
            with suppress(asyncio.CancelledError):
                await consumer
        await self._close_channels()
        self._queue = None

    async def drain(self) -> None:
        """Wait until every queued change has been applied."""

        if self._queue is not None:
            await self._queue.join()

    def enqueue(self, event: ChangeEvent) -> None:
        if self._queue is None:
            logger.debug("realtime.%s.dropped_not_running", event.table)
            return
        self._queue.put_nowait(event)

    def _handler(self, table: str, kind: str) -> Callable[[Any], None]:
        def handle(payload: Any) -> None:
            self.enqueue(ChangeEvent.from_payload(table, kind, payload))

        return handle

    async def _consume(self) -> None:
        queue = self._queue
        while queue is not None:
            event = await queue.get()
            try:
                apply_change(self._store, event)
            except Exception:
                logger.exception("realtime.%s.apply_failed", event.table)
            finally:
                queue.task_done()

    async def _close_channels(self) -> None:
        channels, self._channels = self._channels, []
        for channel in channels:
            try:
                await self._gateway.remove_channel(channel)
            except RemoteError:
                logger.warning("realtime.remove_channel_failed", exc_info=True)
