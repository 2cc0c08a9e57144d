from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from ..errors import FlyerPipelineError, truncate_raw
from ..logging import get_logger
from .db import FlyerDatabase, dumps, utc_now

LOG = get_logger("event-queue")

FLYER_PARSE = "flyer/parse"
FLYER_EXTRACT_IMAGES = "flyer/extract-images"
FLYER_PRODUCT_MATCH = "flyer/product-match"

Handler = Callable[[Dict[str, Any]], Any]


@dataclass(frozen=True)
class Event:
    event_id: int
    name: str
    data: Dict[str, Any]
    attempts: int


class EventQueue:
    """At-least-once event log stored in the `events` table."""

    def __init__(self, db: FlyerDatabase) -> None:
        self.db = db

    def send(self, name: str, data: Mapping[str, Any]) -> int:
        with self.db.transaction() as conn:
            cur = conn.execute(
                "INSERT INTO events (name, data, updated_at) VALUES (?, ?, ?) RETURNING event_id;",
                (name, dumps(dict(data)), utc_now()),
            )
            event_id = int(cur.fetchone()[0])
        LOG.debug("Queued %s #%d", name, event_id)
        return event_id

    def claim_next(self) -> Optional[Event]:
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM events WHERE status = 'pending' ORDER BY event_id LIMIT 1;"
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                "UPDATE events SET status = 'processing', attempts = attempts + 1, updated_at = ? WHERE event_id = ?;",
                (utc_now(), row["event_id"]),
            )
        return Event(
            event_id=int(row["event_id"]),
            name=row["name"],
            data=json.loads(row["data"] or "{}"),
            attempts=int(row["attempts"]) + 1,
        )

    def mark_done(self, event_id: int) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE events SET status = 'done', last_error = NULL, updated_at = ? WHERE event_id = ?;",
                (utc_now(), event_id),
            )

    def mark_failed(self, event_id: int, error: str, *, final: bool) -> None:
        status = "failed" if final else "pending"
        with self.db.transaction() as conn:
            conn.execute(
                "UPDATE events SET status = ?, last_error = ?, updated_at = ? WHERE event_id = ?;",
                (status, truncate_raw(error), utc_now(), event_id),
            )

    def requeue_stale(self) -> int:
        """Return events left in 'processing' by a dead worker to the queue."""
        with self.db.transaction() as conn:
            cur = conn.execute(
                "UPDATE events SET status = 'pending', updated_at = ? WHERE status = 'processing';",
                (utc_now(),),
            )
            return cur.rowcount

    def counts(self) -> Dict[str, int]:
        with self.db.connect() as conn:
            return {r[0]: r[1] for r in conn.execute("SELECT status, COUNT(*) FROM events GROUP BY status;")}


class EventWorker:
    """Single-threaded dispatcher: claim, run the handler, record the outcome."""

    def __init__(
        self,
        queue: EventQueue,
        handlers: Mapping[str, Handler],
        *,
        max_attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.queue = queue
        self.handlers = dict(handlers)
        self.max_attempts = max_attempts
        self._sleep = sleep

    def run_once(self) -> bool:
        """Process at most one event; returns False when the queue was empty."""
        event = self.queue.claim_next()
        if event is None:
            return False

        handler = self.handlers.get(event.name)
        if handler is None:
            LOG.error("No handler for event %s #%d", event.name, event.event_id)
            self.queue.mark_failed(event.event_id, f"No handler for {event.name}", final=True)
            return True

        LOG.info("Handling %s #%d (attempt %d/%d)", event.name, event.event_id, event.attempts, self.max_attempts)
        try:
            handler(event.data)
        except Exception as exc:
            final = event.attempts >= self.max_attempts
            if isinstance(exc, FlyerPipelineError):
                LOG.error("%s #%d failed: %s%s", event.name, event.event_id, exc, " (giving up)" if final else "")
            else:
                LOG.exception("%s #%d crashed", event.name, event.event_id)
            self.queue.mark_failed(event.event_id, f"{type(exc).__name__}: {exc}", final=final)
            return True
        self.queue.mark_done(event.event_id)
        return True

    def run_forever(self, *, poll_interval: float = 2.0, stop: Optional[Callable[[], bool]] = None) -> None:
        recovered = self.queue.requeue_stale()
        if recovered:
            LOG.warning("Re-queued %d events left in processing", recovered)
        while not (stop and stop()):
            if not self.run_once():
                self._sleep(poll_interval)
