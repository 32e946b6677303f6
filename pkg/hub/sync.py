"""
Live-synchronized client cache of one collection.

A SyncedCollection mirrors a store collection by full snapshot replacement:
the store pushes a complete listing after every change and the cache is
swapped wholesale. Mutations never touch the cache; they go to the store and
come back through the next snapshot.

Lock order is store lock -> collection lock. Nothing here calls into the store
while holding self._lock, so a publishing thread can never deadlock against
a subscribing one.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import HubError, NotFound, SyncError, WriteError
from .schema import Record, TaskStatus, record_type
from .store import RemoteStore, Snapshot

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[Tuple[Record, ...]], None]
ErrorCallback = Callable[[SyncError], None]
Predicate = Callable[[Record], bool]


class Subscription:
    """One consumer's handle on a SyncedCollection. Close it to stop delivery."""

    def __init__(self, collection: "SyncedCollection",
                 on_change: Optional[ChangeCallback],
                 on_error: Optional[ErrorCallback]):
        self._collection = collection
        self.on_change = on_change
        self.on_error = on_error
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._collection._release(self)

    unsubscribe = close

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _deliver(self, records: Tuple[Record, ...]) -> None:
        if self._closed or self.on_change is None:
            return
        try:
            self.on_change(records)
        except Exception as e:
            logger.error(f"Error in change handler for {self._collection.kind}: {e}")

    def _fail(self, error: SyncError) -> bool:
        if self._closed or self.on_error is None:
            return False
        try:
            self.on_error(error)
        except Exception as e:
            logger.error(f"Error in sync error handler for {self._collection.kind}: {e}")
        return True


@dataclass
class CleanupReport:
    """Outcome of a bulk delete."""
    selected: int = 0
    removed: int = 0
    failed: List[Tuple[str, str]] = field(default_factory=list)
    batched: bool = False

    @property
    def failed_count(self) -> int:
        return len(self.failed)

    @property
    def complete(self) -> bool:
        return not self.failed

    def summary(self) -> str:
        if not self.selected:
            return "Nothing to clean up"
        text = f"Removed {self.removed} of {self.selected}"
        if self.failed:
            text += f" ({self.failed_count} failed)"
        return text

    def to_dict(self) -> Dict[str, Any]:
        return {
            "selected": self.selected,
            "removed": self.removed,
            "failed": [{"id": rid, "error": err} for rid, err in self.failed],
            "batched": self.batched,
        }


class SyncedCollection:
    """
    Client cache of one collection kept in step with the store.

    Every subscriber shares one store channel. The channel opens with the
    first subscription and is released when the last one closes.
    """

    def __init__(self, store: RemoteStore, kind: str, path: str = None,
                 order_by: str = None):
        self.store = store
        self.kind = kind
        self.record_type = record_type(kind)
        self.path = path or kind
        self.order_by = order_by

        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._channel_lock = threading.Lock()
        self._unlisten: Optional[Callable[[], None]] = None

        self._records: Tuple[Record, ...] = ()
        self._index: Dict[str, Record] = {}
        self._revision = -1
        self._stale = False
        self._last_error: Optional[SyncError] = None
        self._subscriptions: List[Subscription] = []

    def __repr__(self):
        return f"<SyncedCollection {self.path} ({len(self._records)} records)>"

    # ──────────────────────────────────────────
    # Subscriptions
    # ──────────────────────────────────────────

    def subscribe(self, on_change: ChangeCallback = None,
                  on_error: ErrorCallback = None) -> Subscription:
        """
        Start receiving cache updates.

        on_change gets the full record tuple after every applied snapshot.
        A subscriber joining an already-open channel is handed the current
        cache right away. Failures never raise here; they go to on_error.
        """
        sub = Subscription(self, on_change, on_error)
        with self._lock:
            self._subscriptions.append(sub)
        opened = self._open_channel()
        if not opened:
            with self._lock:
                ready = self._revision >= 0
                records = self._records
            if ready:
                sub._deliver(records)
        return sub

    def _open_channel(self) -> bool:
        with self._channel_lock:
            if self._unlisten is not None:
                return False
            with self._lock:
                # Fresh channel: accept whatever revision it starts at
                self._revision = -1
            try:
                self._unlisten = self.store.listen(
                    self.path, self._on_snapshot, self._on_error, order_by=self.order_by
                )
            except Exception as e:
                self._on_error(SyncError(f"Cannot subscribe to {self.path}: {e}", self.path))
                return False
            logger.debug(f"Channel opened on {self.path}")
            return True

    def _release(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)
        self._close_channel_if_idle()

    def _close_channel_if_idle(self) -> None:
        with self._channel_lock:
            with self._lock:
                idle = not self._subscriptions
            if idle and self._unlisten is not None:
                unlisten, self._unlisten = self._unlisten, None
                unlisten()
                logger.debug(f"Channel released on {self.path}")

    def close(self) -> None:
        """Close every subscription and release the channel."""
        with self._lock:
            subs = list(self._subscriptions)
        for sub in subs:
            sub.close()
        self._close_channel_if_idle()

    @property
    def subscribed(self) -> bool:
        return self._unlisten is not None

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    # ──────────────────────────────────────────
    # Snapshot handling
    # ──────────────────────────────────────────

    def _on_snapshot(self, snapshot: Snapshot) -> None:
        try:
            records = tuple(
                self.record_type.from_doc(doc_id, data) for doc_id, data in snapshot.docs
            )
        except (TypeError, ValueError, AttributeError) as e:
            self._on_error(SyncError(f"Bad snapshot for {self.path}: {e}", self.path))
            return

        with self._lock:
            if snapshot.revision <= self._revision:
                logger.debug(
                    f"Dropping snapshot r{snapshot.revision} for {self.path} "
                    f"(have r{self._revision})"
                )
                return
            self._records = records
            self._index = {r.id: r for r in records}
            self._revision = snapshot.revision
            self._stale = False
            self._last_error = None
            subs = list(self._subscriptions)
            self._changed.notify_all()

        for sub in subs:
            sub._deliver(records)

    def _on_error(self, error: SyncError) -> None:
        with self._lock:
            self._stale = True
            self._last_error = error
            subs = list(self._subscriptions)
        handled = False
        for sub in subs:
            handled = sub._fail(error) or handled
        if not handled:
            logger.warning(f"Sync error on {self.path}: {error}")

    # ──────────────────────────────────────────
    # Reads
    # ──────────────────────────────────────────

    @property
    def records(self) -> Tuple[Record, ...]:
        with self._lock:
            return self._records

    @property
    def revision(self) -> int:
        with self._lock:
            return self._revision

    @property
    def stale(self) -> bool:
        with self._lock:
            return self._stale

    @property
    def last_error(self) -> Optional[SyncError]:
        with self._lock:
            return self._last_error

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self):
        return iter(self.records)

    def get(self, record_id: str) -> Optional[Record]:
        with self._lock:
            return self._index.get(record_id)

    def find(self, ref: str) -> Optional[Record]:
        """
        Cached record by full id or unique id prefix, or None when nothing
        in the cache matches. An ambiguous prefix raises NotFound.
        """
        ref = (ref or "").strip()
        if not ref:
            raise NotFound("No record id given", self.path)
        with self._lock:
            exact = self._index.get(ref)
            if exact is not None:
                return exact
            matches = [r for r in self._records if r.id.startswith(ref)]
        if len(matches) > 1:
            raise NotFound(f"{ref!r} matches {len(matches)} {self.kind}, be more specific",
                           self.path, ref)
        return matches[0] if matches else None

    def resolve(self, ref: str) -> Record:
        """Find a cached record by full id or unique id prefix."""
        record = self.find(ref)
        if record is None:
            raise NotFound(f"No {self.kind} matching {ref!r}", self.path, ref)
        return record

    def fetch(self, record_id: str) -> Optional[Record]:
        """Read one record straight from the store, bypassing the cache."""
        snapshot = self._forward("Read", lambda: self.store.query(self.path), record_id)
        for doc_id, data in snapshot.docs:
            if doc_id == record_id:
                return self.record_type.from_doc(doc_id, data)
        return None

    def wait_until(self, predicate: Callable[[Tuple[Record, ...]], bool],
                   timeout: float = 5.0) -> bool:
        """Block until an applied snapshot satisfies predicate. False on timeout."""
        with self._changed:
            return self._changed.wait_for(lambda: predicate(self._records), timeout)

    def refresh(self) -> None:
        """Ask the store to publish changes made by other clients."""
        self.store.poll()

    # ──────────────────────────────────────────
    # Mutations
    # ──────────────────────────────────────────

    def _validate(self, fields: Dict[str, Any], partial: bool,
                  current: Dict[str, Any] = None) -> Dict[str, Any]:
        try:
            return self.record_type.validate(fields, partial=partial, current=current)
        except ValueError as e:
            raise WriteError(str(e), self.path) from e

    def _forward(self, action: str, call: Callable[[], Any], record_id: str = None) -> Any:
        try:
            return call()
        except HubError:
            raise
        except Exception as e:
            raise WriteError(f"{action} failed: {e}", self.path, record_id) from e

    def create(self, fields: Dict[str, Any]) -> str:
        """Validate and persist a new record. Returns the store-assigned id."""
        data = self._validate(fields, partial=False)
        record_id = self._forward("Create", lambda: self.store.add(self.path, data))
        logger.info(f"Created {self.path}/{record_id}")
        return record_id

    def update(self, record_id: str, fields: Dict[str, Any]) -> None:
        """
        Merge fields into an existing record.

        When the update touches fields that are checked together (an event's
        dates), the record's other current values take part in the check.
        They come from the cache, or from the store if the cache lacks it.
        """
        current = None
        linked = self.record_type.LINKED_FIELDS
        if isinstance(fields, dict) and linked and set(fields) & set(linked):
            record = self.get(record_id) or self.fetch(record_id)
            if record is not None:
                current = record.to_fields()
        data = self._validate(fields, partial=True, current=current)
        self._forward("Update", lambda: self.store.update(self.path, record_id, data), record_id)
        logger.info(f"Updated {self.path}/{record_id}: {', '.join(sorted(data))}")

    def delete(self, record_id: str) -> None:
        self._forward("Delete", lambda: self.store.delete(self.path, record_id), record_id)
        logger.info(f"Deleted {self.path}/{record_id}")

    def cleanup(self, predicate: Predicate) -> CleanupReport:
        """
        Delete every cached record matching predicate.

        Uses one atomic batch when the store supports it; otherwise (or if
        the batch fails) deletes one at a time and keeps going past failures.
        Records already gone are not counted as failures.
        """
        candidates = [r.id for r in self.records if predicate(r)]
        report = CleanupReport(selected=len(candidates))
        if not candidates:
            return report

        if self.store.supports_batch:
            try:
                report.removed = self.store.delete_many(self.path, candidates)
                report.batched = True
                logger.info(f"Cleanup on {self.path}: {report.summary()}")
                return report
            except Exception as e:
                logger.warning(f"Batch delete on {self.path} failed, deleting one by one: {e}")

        for record_id in candidates:
            try:
                self.store.delete(self.path, record_id)
                report.removed += 1
            except NotFound:
                logger.debug(f"{self.path}/{record_id} already gone")
            except Exception as e:
                report.failed.append((record_id, str(e)))
                logger.warning(f"Cleanup could not delete {self.path}/{record_id}: {e}")

        logger.info(f"Cleanup on {self.path}: {report.summary()}")
        return report


# ──────────────────────────────────────────
# Cleanup predicates
# ──────────────────────────────────────────

def ended_before(days: int, today: date = None) -> Predicate:
    """Events whose end date is more than `days` days before today."""
    if days < 0:
        raise ValueError("days must be zero or positive")
    cutoff = (today or date.today()) - timedelta(days=days)

    def predicate(record: Record) -> bool:
        end = getattr(record, "end_day", None)
        return end is not None and end < cutoff

    return predicate


def status_is(status) -> Predicate:
    """Tasks currently in the given status."""
    wanted = TaskStatus.parse(status)

    def predicate(record: Record) -> bool:
        return getattr(record, "status", None) == wanted

    return predicate
