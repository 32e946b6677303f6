"""
Transient notices and team pings.

A Notice lives for a few seconds and is then dropped; nothing here is
persisted. ping_team() posts a local notice and hands the message to any
configured sinks on a background thread without waiting for them.
"""
import itertools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

Sink = Callable[[str], None]

LEVELS = ("info", "success", "warning", "error")


@dataclass
class Notice:
    id: int
    text: str
    level: str
    posted: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.posted >= self.ttl

    def to_dict(self) -> Dict[str, object]:
        return {"id": self.id, "text": self.text, "level": self.level}


class Notifier:
    """Short-lived status messages shared by every surface."""

    def __init__(self, ttl: float = 5.0, sinks: Optional[List[Sink]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.sinks: List[Sink] = list(sinks or [])
        self._clock = clock
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._notices: List[Notice] = []
        self.subscribers: List[Callable[[Notice], None]] = []

    def subscribe(self, callback: Callable[[Notice], None]) -> None:
        """Register a callback invoked for every posted notice."""
        self.subscribers.append(callback)

    def post(self, text: str, level: str = "info") -> Notice:
        if level not in LEVELS:
            raise ValueError(f"Unknown notice level: {level!r}")
        now = self._clock()
        notice = Notice(next(self._ids), text, level, now, self.ttl)
        with self._lock:
            self._prune(now)
            self._notices.append(notice)
        log = logger.warning if level in ("warning", "error") else logger.info
        log(f"[notice] {text}")
        for callback in list(self.subscribers):
            try:
                callback(notice)
            except Exception as e:
                logger.error(f"Error in notice callback: {e}")
        return notice

    def info(self, text: str) -> Notice:
        return self.post(text, "info")

    def success(self, text: str) -> Notice:
        return self.post(text, "success")

    def error(self, text: str) -> Notice:
        return self.post(text, "error")

    def active(self) -> List[Notice]:
        """Notices that have not yet expired, oldest first."""
        with self._lock:
            self._prune(self._clock())
            return list(self._notices)

    def dismiss(self, notice_id: int) -> bool:
        with self._lock:
            for notice in self._notices:
                if notice.id == notice_id:
                    self._notices.remove(notice)
                    return True
        return False

    def _prune(self, now: float) -> None:
        self._notices = [n for n in self._notices if not n.expired(now)]

    # ──────────────────────────────────────────
    # Team pings
    # ──────────────────────────────────────────

    def ping_team(self, message: str) -> Notice:
        """
        Manually triggered escalation. Posts a local notice right away and
        fans the message out to sinks in the background. Sink failures are
        logged only.
        """
        notice = self.post(f"📣 Team pinged: {message}", "warning")
        if self.sinks:
            thread = threading.Thread(
                target=self._run_sinks, args=(message,), daemon=True
            )
            thread.start()
        return notice

    def _run_sinks(self, message: str) -> None:
        for sink in list(self.sinks):
            try:
                sink(message)
            except Exception as e:
                logger.warning(f"Ping sink failed: {e}")


def webhook_sink(url: str, timeout: float = 2.0) -> Sink:
    """Sink that POSTs {"text": message} to a chat webhook."""

    def send(message: str) -> None:
        r = requests.post(url, json={"text": message}, timeout=timeout)
        if not r.ok:
            raise RuntimeError(f"webhook answered HTTP {r.status_code}")

    return send
