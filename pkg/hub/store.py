"""
Document store backends.

RemoteStore is the interface the sync layer talks to: per-collection listen,
query and mutate, with the store pushing a full snapshot of the collection
after every committed change. SqliteRemoteStore keeps every document as a JSON
row in a single table and publishes snapshots in commit order.
"""
import json
import logging
import re
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .errors import NotFound, SyncError, WriteError

logger = logging.getLogger(__name__)

_ORDER_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def utc_now() -> str:
    """ISO-8601 UTC timestamp with microseconds."""
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Snapshot:
    """Complete point-in-time listing of one collection."""
    collection: str
    revision: int
    docs: Tuple[Tuple[str, Dict[str, Any]], ...]
    read_at: str = field(default_factory=utc_now)

    def __len__(self) -> int:
        return len(self.docs)

    @property
    def ids(self) -> List[str]:
        return [doc_id for doc_id, _ in self.docs]


SnapshotCallback = Callable[[Snapshot], None]
ErrorCallback = Callable[[SyncError], None]


class RemoteStore(ABC):
    """Collection-oriented document store with pushed snapshots."""

    supports_batch = False

    @abstractmethod
    def listen(
        self,
        collection: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
        order_by: Optional[str] = None,
    ) -> Callable[[], None]:
        """
        Open a live channel on a collection.

        Delivers the current snapshot immediately, then a new full snapshot
        after every change. Returns a function that closes the channel.
        """

    @abstractmethod
    def query(self, collection: str, order_by: Optional[str] = None) -> Snapshot:
        """One-shot read of a whole collection."""

    @abstractmethod
    def add(self, collection: str, fields: Dict[str, Any]) -> str:
        """Persist a new document and return its store-assigned id."""

    @abstractmethod
    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Merge fields into an existing document. Raises NotFound."""

    @abstractmethod
    def delete(self, collection: str, doc_id: str) -> None:
        """Remove a document. Raises NotFound if it is already gone."""

    def delete_many(self, collection: str, doc_ids: Iterable[str]) -> int:
        """Atomically remove several documents; returns how many existed."""
        raise NotImplementedError(f"{type(self).__name__} has no batch delete")

    def poll(self) -> List[str]:
        """Publish changes made outside this client. Returns changed collections."""
        return []

    def close(self) -> None:
        pass


@dataclass(eq=False)
class _Listener:
    on_snapshot: SnapshotCallback
    on_error: Optional[ErrorCallback]
    order_by: Optional[str]
    active: bool = True


def _connect(db_path: str) -> sqlite3.Connection:
    """Open a connection in WAL mode with row access by name."""
    conn = sqlite3.connect(db_path, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


class SqliteRemoteStore(RemoteStore):
    """
    SQLite-backed document store.

    All writes and the snapshot publication that follows them happen under
    one lock, so listeners of a collection see snapshots in commit order with
    strictly increasing revisions. Listener callbacks run on the writing
    thread and must not block.

    db_path must be a file path; every operation opens its own connection.
    """

    supports_batch = True

    def __init__(self, db_path: str = None):
        """Initialize store and create tables if needed."""
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "teamhub" / "hub.db")
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._listeners: Dict[str, List[_Listener]] = {}
        self._revisions: Dict[str, int] = {}
        self._signatures: Dict[str, Tuple[int, Optional[str]]] = {}
        self._poll_thread: Optional[threading.Thread] = None
        self._poll_stop = threading.Event()
        self._init_schema()

    def _init_schema(self):
        """Create tables if they don't exist."""
        with _connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    doc_id TEXT NOT NULL,
                    data TEXT NOT NULL,  -- JSON object
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (collection, doc_id)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_documents_updated
                ON documents(collection, updated_at)
            """)
            conn.commit()

    # ──────────────────────────────────────────
    # Subscriptions
    # ──────────────────────────────────────────

    def listen(self, collection, on_snapshot, on_error=None, order_by=None):
        if order_by is not None and not _ORDER_KEY.match(order_by):
            raise ValueError(f"Invalid order key: {order_by!r}")
        listener = _Listener(on_snapshot, on_error, order_by)
        with self._lock:
            self._listeners.setdefault(collection, []).append(listener)
            if collection not in self._signatures:
                try:
                    self._signatures[collection] = self._signature(collection)
                except SyncError:
                    pass  # reported by the delivery below
            self._deliver(collection, [listener])

        def unlisten():
            with self._lock:
                listener.active = False
                listeners = self._listeners.get(collection, [])
                if listener in listeners:
                    listeners.remove(listener)
            logger.debug(f"Listener on {collection} closed")

        return unlisten

    def _deliver(self, collection: str, listeners: List[_Listener]) -> None:
        """Read the collection once per order key and hand snapshots to listeners."""
        revision = self._revisions.get(collection, 0)
        snapshots: Dict[Optional[str], Snapshot] = {}
        for listener in listeners:
            if not listener.active:
                continue
            snapshot = snapshots.get(listener.order_by)
            if snapshot is None:
                try:
                    snapshot = self._read(collection, revision, listener.order_by)
                except SyncError as e:
                    self._fail(listener, e)
                    continue
                snapshots[listener.order_by] = snapshot
            try:
                listener.on_snapshot(snapshot)
            except Exception as e:
                logger.error(f"Error in snapshot listener for {collection}: {e}")

    def _fail(self, listener: _Listener, error: SyncError) -> None:
        if listener.on_error is None:
            logger.warning(f"Unhandled sync error: {error}")
            return
        try:
            listener.on_error(error)
        except Exception as e:
            logger.error(f"Error in sync error handler: {e}")

    def _committed(self, collection: str) -> None:
        """Bump the revision and push a snapshot to every listener."""
        self._revisions[collection] = self._revisions.get(collection, 0) + 1
        try:
            self._signatures[collection] = self._signature(collection)
        except SyncError as e:
            logger.warning(f"Cannot record change signature: {e}")
        self._deliver(collection, list(self._listeners.get(collection, [])))

    # ──────────────────────────────────────────
    # Reads
    # ──────────────────────────────────────────

    def query(self, collection, order_by=None):
        if order_by is not None and not _ORDER_KEY.match(order_by):
            raise ValueError(f"Invalid order key: {order_by!r}")
        with self._lock:
            return self._read(collection, self._revisions.get(collection, 0), order_by)

    def _read(self, collection: str, revision: int, order_by: Optional[str]) -> Snapshot:
        try:
            with _connect(self.db_path) as conn:
                if order_by:
                    rows = conn.execute(
                        "SELECT doc_id, data FROM documents WHERE collection = ? "
                        "ORDER BY json_extract(data, ?), created_at, doc_id",
                        (collection, f"$.{order_by}"),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        "SELECT doc_id, data FROM documents WHERE collection = ? "
                        "ORDER BY created_at, doc_id",
                        (collection,),
                    ).fetchall()
        except sqlite3.Error as e:
            raise SyncError(f"Cannot read {collection}: {e}", collection) from e

        docs = []
        for row in rows:
            try:
                data = json.loads(row["data"])
            except (json.JSONDecodeError, TypeError):
                logger.warning(f"Skipping unreadable document {collection}/{row['doc_id']}")
                continue
            docs.append((row["doc_id"], data))
        return Snapshot(collection=collection, revision=revision, docs=tuple(docs))

    def _signature(self, collection: str) -> Tuple[int, Optional[str]]:
        try:
            with _connect(self.db_path) as conn:
                row = conn.execute(
                    "SELECT COUNT(*), MAX(updated_at) FROM documents WHERE collection = ?",
                    (collection,),
                ).fetchone()
        except sqlite3.Error as e:
            raise SyncError(f"Cannot read {collection}: {e}", collection) from e
        return (row[0], row[1])

    # ──────────────────────────────────────────
    # Writes
    # ──────────────────────────────────────────

    def add(self, collection, fields):
        doc_id = uuid.uuid4().hex
        now = utc_now()
        data = dict(fields)
        data.setdefault("created_at", now)
        try:
            body = json.dumps(data, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise WriteError(f"Record is not serializable: {e}", collection) from e

        with self._lock:
            try:
                with _connect(self.db_path) as conn:
                    conn.execute(
                        "INSERT INTO documents (collection, doc_id, data, created_at, updated_at) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (collection, doc_id, body, data["created_at"], now),
                    )
                    conn.commit()
            except sqlite3.Error as e:
                raise WriteError(f"Cannot create record in {collection}: {e}", collection) from e
            self._committed(collection)
        return doc_id

    def update(self, collection, doc_id, fields):
        with self._lock:
            try:
                with _connect(self.db_path) as conn:
                    row = conn.execute(
                        "SELECT data FROM documents WHERE collection = ? AND doc_id = ?",
                        (collection, doc_id),
                    ).fetchone()
                    if row is None:
                        raise NotFound(f"{collection}/{doc_id} not found", collection, doc_id)
                    data = json.loads(row["data"])
                    data.update(fields)
                    conn.execute(
                        "UPDATE documents SET data = ?, updated_at = ? "
                        "WHERE collection = ? AND doc_id = ?",
                        (json.dumps(data, ensure_ascii=False), utc_now(), collection, doc_id),
                    )
                    conn.commit()
            except (sqlite3.Error, TypeError, ValueError) as e:
                raise WriteError(
                    f"Cannot update {collection}/{doc_id}: {e}", collection, doc_id
                ) from e
            self._committed(collection)

    def delete(self, collection, doc_id):
        with self._lock:
            try:
                with _connect(self.db_path) as conn:
                    cur = conn.execute(
                        "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                        (collection, doc_id),
                    )
                    conn.commit()
            except sqlite3.Error as e:
                raise WriteError(
                    f"Cannot delete {collection}/{doc_id}: {e}", collection, doc_id
                ) from e
            if cur.rowcount == 0:
                raise NotFound(f"{collection}/{doc_id} not found", collection, doc_id)
            self._committed(collection)

    def delete_many(self, collection, doc_ids):
        doc_ids = list(dict.fromkeys(doc_ids))
        if not doc_ids:
            return 0
        placeholders = ", ".join("?" for _ in doc_ids)
        with self._lock:
            try:
                with _connect(self.db_path) as conn:
                    cur = conn.execute(
                        f"DELETE FROM documents WHERE collection = ? AND doc_id IN ({placeholders})",
                        (collection, *doc_ids),
                    )
                    conn.commit()
            except sqlite3.Error as e:
                raise WriteError(f"Batch delete in {collection} failed: {e}", collection) from e
            removed = cur.rowcount
            if removed:
                self._committed(collection)
        return removed

    # ──────────────────────────────────────────
    # Cross-process change detection
    # ──────────────────────────────────────────

    def poll(self):
        """
        Publish snapshots for listened collections whose rows changed
        without going through this store instance (another process).
        """
        changed = []
        with self._lock:
            for collection, listeners in list(self._listeners.items()):
                if not listeners:
                    continue
                try:
                    signature = self._signature(collection)
                except SyncError as e:
                    for listener in list(listeners):
                        self._fail(listener, e)
                    continue
                if signature != self._signatures.get(collection):
                    changed.append(collection)
                    self._committed(collection)
        if changed:
            logger.info(f"External changes published: {', '.join(changed)}")
        return changed

    def start_polling(self, interval: float = 30.0) -> None:
        """Run poll() every `interval` seconds on a daemon thread."""
        if self._poll_thread and self._poll_thread.is_alive():
            return
        self._poll_stop.clear()

        def _poll_worker():
            while not self._poll_stop.wait(interval):
                try:
                    self.poll()
                except Exception as e:
                    logger.error(f"Store poll failed: {e}")

        self._poll_thread = threading.Thread(target=_poll_worker, daemon=True)
        self._poll_thread.start()

    def close(self):
        self._poll_stop.set()
        with self._lock:
            for listeners in self._listeners.values():
                for listener in listeners:
                    listener.active = False
            self._listeners.clear()
