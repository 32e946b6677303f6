"""
Process-level wiring.

TeamHub builds one store, one assistant, one notifier and one
SyncedCollection per kind, keeps the three caches subscribed for its whole
life, and exposes the user intents the surfaces call. Every intent that
fails posts an error notice and re-raises, so a surface can still pick the
right reply (HTTP status, chat message).
"""
import logging
from contextlib import contextmanager
from datetime import date
from typing import Any, Dict, List, Optional

from .assistant import AIAssistant
from .config import HubConfig
from .errors import AIError, HubError, NotFound, WriteError
from .notify import Notice, Notifier, webhook_sink
from .prompts import (
    EVENT_SCHEMA, board_summary_prompt, diagnosis_prompt, events_summary_prompt,
    extraction_prompt, normalize_extraction,
)
from .schema import EVENTS, ISSUES, KINDS, TASKS, Record, TaskStatus
from .store import RemoteStore, SqliteRemoteStore
from .sync import CleanupReport, SyncedCollection, ended_before, status_is
from . import views

logger = logging.getLogger(__name__)


class TeamHub:
    """Shared caches plus the intents every surface raises."""

    def __init__(self, store: RemoteStore, assistant: AIAssistant = None,
                 notifier: Notifier = None, config: HubConfig = None):
        self.config = config or HubConfig()
        self.store = store
        self.assistant = assistant or AIAssistant(enabled=False)
        self.notifier = notifier or Notifier(ttl=self.config.notice_ttl)
        self._closed = False

        self.collections: Dict[str, SyncedCollection] = {
            EVENTS: SyncedCollection(
                store, EVENTS, self.config.collection_path(EVENTS), order_by="start_date"
            ),
            TASKS: SyncedCollection(store, TASKS, self.config.collection_path(TASKS)),
            ISSUES: SyncedCollection(store, ISSUES, self.config.collection_path(ISSUES)),
        }
        self._subscriptions = [
            c.subscribe(on_error=self._on_sync_error) for c in self.collections.values()
        ]

    @classmethod
    def from_config(cls, config: HubConfig) -> "TeamHub":
        """Build the hub a server or bot process runs on. Raises ConfigError."""
        config.require()
        store = SqliteRemoteStore(config.resolved_db_path)
        if config.poll_interval > 0:
            store.start_polling(config.poll_interval)
        assistant = AIAssistant(
            api_key=config.gemini_api_key,
            model=config.gemini_model,
            endpoint=config.gemini_endpoint,
            max_attempts=config.ai_max_attempts,
            backoff=config.ai_backoff,
            timeout=config.ai_timeout,
            enabled=config.ai_enabled,
        )
        sinks = [webhook_sink(config.ping_webhook_url)] if config.ping_webhook_url else []
        notifier = Notifier(ttl=config.notice_ttl, sinks=sinks)
        if not assistant.configured:
            logger.info("AI assistant not configured; AI features disabled")
        return cls(store, assistant, notifier, config)

    def close(self) -> None:
        """Stop delivery, release channels and close the store."""
        if self._closed:
            return
        self._closed = True
        for sub in self._subscriptions:
            sub.close()
        for collection in self.collections.values():
            collection.close()
        self.store.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "TeamHub":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ──────────────────────────────────────────
    # Helpers
    # ──────────────────────────────────────────

    @property
    def events(self) -> SyncedCollection:
        return self.collections[EVENTS]

    @property
    def tasks(self) -> SyncedCollection:
        return self.collections[TASKS]

    @property
    def issues(self) -> SyncedCollection:
        return self.collections[ISSUES]

    def collection(self, kind: str) -> SyncedCollection:
        try:
            return self.collections[kind]
        except KeyError:
            raise WriteError(f"Unknown collection: {kind!r}. Available: {', '.join(KINDS)}")

    def _on_sync_error(self, error) -> None:
        self.notifier.error(f"Sync problem: {error}")

    @contextmanager
    def _intent(self, action: str):
        try:
            yield
        except HubError as e:
            self.notifier.error(f"{action} failed: {e}")
            raise

    def _ai_result(self, action: str, result: Any) -> Optional[Any]:
        """Drop AI results that come back after the hub was closed."""
        if self._closed:
            logger.info(f"Discarding {action} result: hub closed")
            return None
        return result

    # ──────────────────────────────────────────
    # Generic record intents
    # ──────────────────────────────────────────

    def create(self, kind: str, fields: Dict[str, Any]) -> str:
        with self._intent("Create"):
            collection = self.collection(kind)
            record_id = collection.create(fields)
        self.notifier.success(f"Added to {kind}")
        return record_id

    @staticmethod
    def _target(collection: SyncedCollection, ref: str, exact: bool) -> str:
        """
        Store id an update or delete is aimed at. A unique cached prefix is
        expanded; anything else is passed through as a full id so the store
        decides whether it exists. exact=True skips prefix expansion.
        """
        ref = (ref or "").strip()
        if not ref:
            raise NotFound("No record id given", collection.path)
        if exact:
            return ref
        record = collection.find(ref)
        return record.id if record is not None else ref

    def update(self, kind: str, ref: str, fields: Dict[str, Any],
               exact: bool = False) -> Record:
        with self._intent("Update"):
            collection = self.collection(kind)
            record_id = self._target(collection, ref, exact)
            collection.update(record_id, fields)
            record = collection.get(record_id) or collection.fetch(record_id)
            if record is None:
                raise NotFound(f"{kind} {record_id} is gone", collection.path, record_id)
        self.notifier.success(f"Updated {views.short_id(record_id)}")
        return record

    def delete(self, kind: str, ref: str, exact: bool = False) -> str:
        with self._intent("Delete"):
            collection = self.collection(kind)
            record_id = self._target(collection, ref, exact)
            collection.delete(record_id)
        self.notifier.success(f"Deleted {views.short_id(record_id)} from {kind}")
        return record_id

    def cleanup(self, kind: str, days: int = None, today: date = None) -> CleanupReport:
        """Retention cleanup: ended events, or completed tasks."""
        with self._intent("Cleanup"):
            collection = self.collection(kind)
            if kind == EVENTS:
                try:
                    predicate = ended_before(
                        self.config.cleanup_days if days is None else days, today
                    )
                except ValueError as e:
                    raise WriteError(str(e), collection.path) from e
            elif kind == TASKS:
                predicate = status_is(TaskStatus.COMPLETE)
            else:
                raise WriteError(f"No cleanup rule for {kind}")
            report = collection.cleanup(predicate)
        level = "success" if report.complete else "warning"
        self.notifier.post(report.summary(), level)
        return report

    # ──────────────────────────────────────────
    # Events
    # ──────────────────────────────────────────

    def add_event(self, fields: Dict[str, Any]) -> str:
        return self.create(EVENTS, fields)

    def delete_event(self, ref: str) -> str:
        return self.delete(EVENTS, ref)

    def cleanup_events(self, days: int = None, today: date = None) -> CleanupReport:
        return self.cleanup(EVENTS, days=days, today=today)

    def export_event(self, ref: str) -> str:
        with self._intent("Export"):
            event = self.events.resolve(ref)
        return views.export_event(event)

    def extract_event(self, text: str) -> Optional[Dict[str, Any]]:
        """
        Ask the assistant for an event draft from pasted report text.
        The draft is returned for review; it is never committed here.
        """
        with self._intent("Extraction"):
            if not (text or "").strip():
                raise AIError("No text to extract from")
            raw = self.assistant.generate(extraction_prompt(text), schema=EVENT_SCHEMA)
            draft = normalize_extraction(raw)
        if self._ai_result("extraction", draft) is None:
            return None
        self.notifier.success("Data extracted. Review and save.")
        return draft

    def summarize_events(self, upcoming_only: bool = True, today: date = None) -> Optional[str]:
        today = today or date.today()
        events = views.search_events(self.events.records)
        if upcoming_only:
            events = [e for e in events if e.end_day is None or e.end_day >= today]
        with self._intent("Summary"):
            summary = self.assistant.generate(events_summary_prompt(events))
        return self._ai_result("events summary", summary)

    # ──────────────────────────────────────────
    # Tasks
    # ──────────────────────────────────────────

    def add_task(self, title: str, steps: str = "", status: str = "todo") -> str:
        return self.create(TASKS, {"title": title, "steps": steps, "status": status})

    def edit_task(self, ref: str, fields: Dict[str, Any]) -> Record:
        return self.update(TASKS, ref, fields)

    def delete_task(self, ref: str) -> str:
        return self.delete(TASKS, ref)

    def _apply(self, mutation: Optional[views.Mutation], task: Record) -> Record:
        if mutation is None:
            self.notifier.info(f"{views.short_id(task.id)} is already {task.status.value}")
            return task
        self.tasks.update(mutation.record_id, mutation.fields)
        self.notifier.success(
            f"Moved {views.short_id(task.id)} to {mutation.fields['status']}"
        )
        return self.tasks.get(task.id) or task

    def move_task(self, ref: str, status) -> Record:
        with self._intent("Move"):
            task = self.tasks.resolve(ref)
            try:
                mutation = views.move(task, status)
            except ValueError as e:
                raise WriteError(str(e), self.tasks.path, task.id) from e
            return self._apply(mutation, task)

    def advance_task(self, ref: str) -> Record:
        with self._intent("Move"):
            task = self.tasks.resolve(ref)
            return self._apply(views.advance(task), task)

    def retreat_task(self, ref: str) -> Record:
        with self._intent("Move"):
            task = self.tasks.resolve(ref)
            return self._apply(views.retreat(task), task)

    def cleanup_completed(self) -> CleanupReport:
        return self.cleanup(TASKS)

    def summarize_board(self) -> Optional[str]:
        with self._intent("Summary"):
            summary = self.assistant.generate(board_summary_prompt(self.tasks.records))
        return self._ai_result("board summary", summary)

    # ──────────────────────────────────────────
    # Issues
    # ──────────────────────────────────────────

    def report_issue(self, fields: Dict[str, Any]) -> str:
        return self.create(ISSUES, fields)

    def delete_issue(self, ref: str) -> str:
        return self.delete(ISSUES, ref)

    def diagnose_issue(self, ref: str) -> Optional[str]:
        with self._intent("Diagnosis"):
            issue = self.issues.resolve(ref)
            advice = self.assistant.generate(diagnosis_prompt(issue))
        return self._ai_result("diagnosis", advice)

    def ping_team(self, ref: str) -> Notice:
        """Fire-and-forget escalation for an issue. Nothing is stored."""
        with self._intent("Ping"):
            issue = self.issues.resolve(ref)
        return self.notifier.ping_team(f"[{issue.urgency.value}] {issue.title}")

    # ──────────────────────────────────────────
    # Read-side snapshots for surfaces
    # ──────────────────────────────────────────

    def stats(self, today: date = None) -> Dict[str, Dict[str, int]]:
        return {
            kind: views.stats(kind, collection.records, today)
            for kind, collection in self.collections.items()
        }

    def notices(self) -> List[Notice]:
        return self.notifier.active()
