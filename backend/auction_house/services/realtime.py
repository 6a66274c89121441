"""Change feed for the published tables.

Row images are captured in ``after_flush`` and only broadcast once the
surrounding transaction commits; a rollback discards them. Every event
carries the full new row, plus the old row for UPDATE/DELETE (the
equivalent of ``REPLICA IDENTITY FULL``).

Subscribers are level-triggered: an event is a hint to re-fetch, not a
delta to apply. There is no replay for late subscribers and no retry.
"""
from __future__ import annotations

import asyncio
import itertools
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import event, inspect as sa_inspect
from sqlalchemy.orm import Session

from auction_house.config import settings
from auction_house.models_sqlalchemy.models import PUBLIC_TABLES
from auction_house.services import policies
from auction_house.services.policies import Caller
from auction_house.utils import clock
from auction_house.utils.logger import logger

EVENT_TYPES = ("INSERT", "UPDATE", "DELETE")
_PENDING_KEY = "realtime_pending_events"


@dataclass
class ChangeEvent:
    table: str
    type: str
    record: Dict[str, Any]
    old_record: Optional[Dict[str, Any]] = None
    commit_timestamp: datetime = field(default_factory=clock.now_utc)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "schema": "public",
            "table": self.table,
            "eventType": self.type,
            "new": self.record if self.type != "DELETE" else {},
            "old": self.old_record or {},
            "commit_timestamp": self.commit_timestamp.isoformat(),
        }


def parse_filter(raw: Optional[str]) -> Optional[Tuple[str, str]]:
    """Parse a single ``column=eq.value`` predicate."""

    if not raw:
        return None
    column, sep, rest = raw.partition("=")
    if not sep or not rest.startswith("eq.") or not column:
        raise ValueError(f"Unsupported change-feed filter: {raw!r} (expected column=eq.value)")
    return column, rest[len("eq."):]


class Subscription:
    """One subscriber channel on a single table."""

    def __init__(
        self,
        feed: "ChangeFeed",
        table: str,
        event_type: str = "*",
        row_filter: Optional[Tuple[str, Any]] = None,
        caller: Optional[Caller] = None,
        callback: Optional[Callable[[ChangeEvent], None]] = None,
        queue_size: int = 100,
    ):
        self.id = next(feed._ids)
        self.feed = feed
        self.table = table
        self.event_type = event_type.upper()
        self.row_filter = row_filter
        self.caller = caller or Caller.anonymous()
        self.callback = callback
        self.queue: "asyncio.Queue[ChangeEvent]" = asyncio.Queue(maxsize=queue_size)
        try:
            self._loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        self.closed = False

    def matches(self, change: ChangeEvent) -> bool:
        if change.table != self.table:
            return False
        if self.event_type != "*" and change.type != self.event_type:
            return False
        row = change.old_record if change.type == "DELETE" else change.record
        row = row or {}
        if self.row_filter is not None:
            column, value = self.row_filter
            if column not in row or not _same_value(row[column], value):
                return False
        return policies.can_select(self.table, self.caller, row)

    def deliver(self, change: ChangeEvent) -> None:
        if self.closed:
            return
        if self.callback is not None:
            self.callback(change)
            return
        loop = self._loop
        if loop is not None and loop.is_running() and not _on_loop(loop):
            loop.call_soon_threadsafe(self._enqueue, change)
        else:
            self._enqueue(change)

    def _enqueue(self, change: ChangeEvent) -> None:
        if self.queue.full():
            dropped = self.queue.get_nowait()
            logger.warning(
                "Change feed subscription %s queue full; dropped %s event on %s",
                self.id,
                dropped.type,
                dropped.table,
            )
        self.queue.put_nowait(change)

    async def get(self) -> ChangeEvent:
        return await self.queue.get()

    def close(self) -> None:
        self.feed.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def _same_value(current: Any, expected: Any) -> bool:
    if isinstance(current, datetime) and isinstance(expected, datetime):
        return clock.as_utc(current) == clock.as_utc(expected)
    return current == expected


def _typed_filter(table: str, column: str, raw: str) -> Tuple[str, Any]:
    """Coerce the filter value to the column's type so it compares like the row does."""

    # data_client imports this module for row images.
    from auction_house.services.data_client import DataAccessError, _coerce_value

    model = PUBLIC_TABLES.get(table)
    if model is None:
        return column, raw
    columns = {c.key: c.type for c in sa_inspect(model).columns}
    if column not in columns:
        raise ValueError(f"Unknown change-feed filter column for {table}: {column}")
    try:
        return column, _coerce_value(column, columns[column], raw)
    except DataAccessError as exc:
        raise ValueError(str(exc)) from exc


def _on_loop(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False


class ChangeFeed:
    """In-process publication of row changes to subscribers."""

    def __init__(self, tables=None, queue_size: Optional[int] = None):
        self.publication = set(tables if tables is not None else PUBLIC_TABLES)
        self.queue_size = queue_size or settings.REALTIME_QUEUE_SIZE
        self._subscriptions: Dict[int, Subscription] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._attached = False

    def subscribe(
        self,
        table: str,
        event: str = "*",
        filter: Optional[str] = None,
        caller: Optional[Caller] = None,
        callback: Optional[Callable[[ChangeEvent], None]] = None,
    ) -> Subscription:
        if table not in self.publication:
            raise ValueError(f"Table {table!r} is not in the realtime publication")
        if event != "*" and event.upper() not in EVENT_TYPES:
            raise ValueError(f"Unsupported event type {event!r}")
        row_filter = parse_filter(filter)
        if row_filter is not None:
            row_filter = _typed_filter(table, *row_filter)
        sub = Subscription(
            self,
            table,
            event_type=event,
            row_filter=row_filter,
            caller=caller,
            callback=callback,
            queue_size=self.queue_size,
        )
        with self._lock:
            self._subscriptions[sub.id] = sub
        logger.info("Change feed: subscription %s on %s (event=%s, filter=%s)", sub.id, table, event, filter)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.closed = True
        with self._lock:
            removed = self._subscriptions.pop(sub.id, None)
        if removed is not None:
            logger.info("Change feed: subscription %s on %s closed", sub.id, sub.table)

    @property
    def subscription_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, changes: List[ChangeEvent]) -> int:
        """Fan out committed changes; returns the number of deliveries."""

        with self._lock:
            subs = list(self._subscriptions.values())
        delivered = 0
        for change in changes:
            if change.table not in self.publication:
                continue
            for sub in subs:
                if sub.matches(change):
                    sub.deliver(change)
                    delivered += 1
        return delivered

    # Session hooks

    def _capture(self, session: Session, flush_context) -> None:
        pending = session.info.setdefault(_PENDING_KEY, [])
        for obj in session.new:
            table = obj.__table__.name
            if table in self.publication:
                pending.append(ChangeEvent(table, "INSERT", row_image(obj)))
        for obj in session.dirty:
            table = obj.__table__.name
            if table in self.publication and session.is_modified(obj, include_collections=False):
                pending.append(ChangeEvent(table, "UPDATE", row_image(obj), old_row_image(obj)))
        for obj in session.deleted:
            table = obj.__table__.name
            if table in self.publication:
                image = old_row_image(obj)
                pending.append(ChangeEvent(table, "DELETE", image, image))

    def _flush_pending(self, session: Session) -> None:
        pending = session.info.pop(_PENDING_KEY, None)
        if pending:
            self.publish(pending)

    def _discard_pending(self, session: Session, previous_transaction=None) -> None:
        session.info.pop(_PENDING_KEY, None)

    def attach(self, session_cls=Session) -> None:
        if self._attached:
            return
        event.listen(session_cls, "after_flush", self._capture)
        event.listen(session_cls, "after_commit", self._flush_pending)
        event.listen(session_cls, "after_rollback", self._discard_pending)
        self._attached = True


def row_image(obj) -> Dict[str, Any]:
    return {column.key: getattr(obj, column.key) for column in sa_inspect(obj).mapper.column_attrs}


def old_row_image(obj) -> Dict[str, Any]:
    """Row as it was before the pending flush."""

    state = sa_inspect(obj)
    image = {}
    for attr in state.mapper.column_attrs:
        history = state.attrs[attr.key].history
        if history.deleted:
            image[attr.key] = history.deleted[0]
        else:
            image[attr.key] = getattr(obj, attr.key)
    return image


change_feed = ChangeFeed()
change_feed.attach()
