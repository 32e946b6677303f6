"""
Tests for TeamHub intents, notices and configuration loading.
"""
import threading
from datetime import date
from unittest.mock import MagicMock, patch

import pytest

from conftest import event_fields
from pkg.hub.config import HubConfig
from pkg.hub.errors import AIError, ConfigError, NotFound, WriteError
from pkg.hub.notify import Notifier
from pkg.hub.schema import TaskStatus
from pkg.hub.store import SqliteRemoteStore
from pkg.hub.teamhub import TeamHub


def gemini_text(text):
    r = MagicMock(ok=True, status_code=200)
    r.json.return_value = {"candidates": [{"content": {"parts": [{"text": text}]}}]}
    return r


def texts(hub):
    return [n.text for n in hub.notices()]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Record intents
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_add_event_is_cached_and_announced(hub):
    event_id = hub.add_event(event_fields())
    assert hub.events.get(event_id).name == "Client demo"
    assert "Added to events" in texts(hub)


def test_failed_intent_posts_error_and_reraises(hub):
    with pytest.raises(NotFound):
        hub.delete_task("nope")
    notice = hub.notices()[-1]
    assert notice.level == "error"
    assert notice.text.startswith("Delete failed:")


def test_invalid_fields_are_write_errors(hub):
    with pytest.raises(WriteError, match="Missing required field"):
        hub.add_event({"name": "No dates"})
    assert len(hub.events) == 0


def test_unknown_collection(hub):
    with pytest.raises(WriteError, match="Unknown collection"):
        hub.create("notes", {"title": "x"})


def test_edit_task_returns_fresh_record(hub):
    task_id = hub.add_task("Draft agenda", steps="1. rooms")
    record = hub.edit_task(task_id[:8], {"title": "Final agenda"})
    assert record.id == task_id
    assert record.title == "Final agenda"
    assert record.steps == "1. rooms"


def test_update_and_delete_records_written_by_another_process(hub, db_path):
    other = SqliteRemoteStore(db_path)
    try:
        task_id = other.add("shared_tasks", {"title": "From the bot", "status": "todo"})
        assert hub.tasks.get(task_id) is None

        record = hub.update("tasks", task_id, {"status": "doing"})
        assert record.id == task_id
        assert record.status == TaskStatus.DOING
        assert record.title == "From the bot"

        unseen_id = other.add("shared_tasks", {"title": "Not cached yet", "status": "todo"})
        assert hub.tasks.get(unseen_id) is None
        assert hub.delete("tasks", unseen_id) == unseen_id
        assert set(dict(other.query("shared_tasks").docs)) == {task_id}
    finally:
        other.close()


def test_exact_ids_skip_prefix_expansion(hub):
    task_id = hub.add_task("Draft agenda")
    with pytest.raises(NotFound):
        hub.update("tasks", task_id[:8], {"title": "x"}, exact=True)
    with pytest.raises(NotFound):
        hub.delete("tasks", task_id[:8], exact=True)
    assert hub.tasks.get(task_id).title == "Draft agenda"
    assert hub.delete("tasks", task_id, exact=True) == task_id


def test_move_advance_and_retreat(hub):
    task_id = hub.add_task("Ship it")
    assert hub.advance_task(task_id).status == TaskStatus.DOING
    assert hub.move_task(task_id, "complete").status == TaskStatus.COMPLETE
    # Already on the last column: unchanged, info notice only
    assert hub.advance_task(task_id).status == TaskStatus.COMPLETE
    assert hub.notices()[-1].level == "info"
    assert hub.retreat_task(task_id).status == TaskStatus.DOING


def test_move_to_unknown_status(hub):
    task_id = hub.add_task("Ship it")
    with pytest.raises(WriteError, match="Invalid status"):
        hub.move_task(task_id, "blocked")
    assert hub.tasks.get(task_id).status == TaskStatus.TODO


def test_export_event(hub):
    event_id = hub.add_event(event_fields(room="Lab 2"))
    block = hub.export_event(event_id)
    assert "Event Name: Client demo" in block
    assert "Location: Lab 2" in block


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Cleanup
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_cleanup_events_uses_retention_days(hub):
    old = hub.add_event(event_fields(start_date="2026-08-01", end_date="2026-08-02"))
    recent = hub.add_event(event_fields(start_date="2026-10-01", end_date="2026-10-02"))
    report = hub.cleanup_events(today=date(2026, 10, 17))
    assert report.removed == 1
    assert hub.events.get(old) is None
    assert hub.events.get(recent) is not None
    assert "Removed 1 of 1" in texts(hub)


def test_cleanup_completed_tasks(hub):
    done = hub.add_task("Done", status="complete")
    open_ = hub.add_task("Open")
    report = hub.cleanup_completed()
    assert report.removed == 1
    assert [t.id for t in hub.tasks.records] == [open_]
    assert hub.tasks.get(done) is None


def test_cleanup_rejects_bad_input(hub):
    with pytest.raises(WriteError, match="No cleanup rule"):
        hub.cleanup("issues")
    with pytest.raises(WriteError):
        hub.cleanup_events(days=-1)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# AI intents
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_extract_returns_draft_without_saving(hub):
    body = '{"eventName": "Budget review", "startDate": "2026-11-03", "eventPoc": "Lee"}'
    with patch("pkg.hub.assistant.requests.post", return_value=gemini_text(body)):
        draft = hub.extract_event("Lee runs the budget review on Nov 3")
    assert draft == {
        "name": "Budget review",
        "start_date": "2026-11-03",
        "end_date": "2026-11-03",
        "poc": "Lee",
    }
    assert len(hub.events) == 0
    assert "Data extracted. Review and save." in texts(hub)


def test_extract_failure_leaves_events_alone(hub, sleeps):
    hub.add_event(event_fields())
    with patch("pkg.hub.assistant.requests.post",
               return_value=MagicMock(ok=False, status_code=500)):
        with pytest.raises(AIError):
            hub.extract_event("something")
    assert len(hub.events) == 1
    assert len(sleeps) == 2
    assert hub.notices()[-1].text.startswith("Extraction failed:")


def test_extract_empty_text(hub):
    with patch("pkg.hub.assistant.requests.post") as post:
        with pytest.raises(AIError, match="No text"):
            hub.extract_event("   ")
    post.assert_not_called()


def test_unconfigured_ai_raises(store, clock):
    with TeamHub(store, notifier=Notifier(clock=clock)) as hub:
        with pytest.raises(AIError, match="not configured"):
            hub.summarize_board()


def test_result_after_close_is_discarded(hub):
    def close_then_answer(*args, **kwargs):
        hub.close()
        return "late answer"

    with patch.object(hub.assistant, "generate", side_effect=close_then_answer):
        assert hub.summarize_board() is None
    assert hub.closed


def test_diagnose_issue(hub):
    issue_id = hub.report_issue({"title": "Projector dead", "description": "No power"})
    with patch("pkg.hub.assistant.requests.post",
               return_value=gemini_text("Check the breaker.")) as post:
        assert hub.diagnose_issue(issue_id) == "Check the breaker."
    prompt = post.call_args[1]["json"]["contents"][0]["parts"][0]["text"]
    assert "Projector dead" in prompt


def test_summarize_events_skips_past_ones(hub):
    hub.add_event(event_fields(name="Past thing", start_date="2026-01-01", end_date="2026-01-02"))
    hub.add_event(event_fields(name="Next thing"))
    with patch("pkg.hub.assistant.requests.post",
               return_value=gemini_text("One event coming up.")) as post:
        assert hub.summarize_events(today=date(2026, 10, 17)) == "One event coming up."
    prompt = post.call_args[1]["json"]["contents"][0]["parts"][0]["text"]
    assert "Next thing" in prompt
    assert "Past thing" not in prompt


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Pings and notices
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_ping_team_stores_nothing(hub, store):
    issue_id = hub.report_issue({
        "title": "Projector", "description": "No signal", "urgency": "high",
    })
    before = store.query("shared_issues").docs
    notice = hub.ping_team(issue_id)
    assert notice.text == "📣 Team pinged: [high] Projector"
    assert notice.level == "warning"
    assert store.query("shared_issues").docs == before


def test_notices_expire(clock):
    notifier = Notifier(ttl=5.0, clock=clock)
    notifier.info("first")
    clock.advance(3)
    notifier.success("second")
    assert [n.text for n in notifier.active()] == ["first", "second"]
    clock.advance(2)
    assert [n.text for n in notifier.active()] == ["second"]
    clock.advance(5)
    assert notifier.active() == []


def test_dismiss_and_unknown_level(clock):
    notifier = Notifier(clock=clock)
    notice = notifier.info("hello")
    assert notifier.dismiss(notice.id)
    assert not notifier.dismiss(notice.id)
    with pytest.raises(ValueError):
        notifier.post("x", "loud")


def test_ping_sinks_run_in_background(clock):
    delivered = threading.Event()
    received = []

    def sink(message):
        received.append(message)
        delivered.set()

    def broken(message):
        raise RuntimeError("webhook down")

    notifier = Notifier(sinks=[broken, sink], clock=clock)
    notifier.ping_team("[urgent] Fire alarm")
    assert delivered.wait(2.0)
    assert received == ["[urgent] Fire alarm"]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Configuration
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestHubConfig:

    def test_load_yaml_ignores_unknown_keys(self, tmp_path):
        path = tmp_path / "teamhub.yaml"
        path.write_text("cleanup_days: 7\nnamespace: user\nuser_id: u1\nbots: {}\n")
        config = HubConfig.load(str(path))
        assert config.cleanup_days == 7
        assert config.collection_path("tasks") == "users/u1/tasks"

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            HubConfig.load(str(tmp_path / "missing.yaml"))

    def test_missing_env_file_falls_back_to_defaults(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEAMHUB_CONFIG", str(tmp_path / "missing.yaml"))
        assert HubConfig.load() == HubConfig()

    def test_bad_yaml(self, tmp_path):
        path = tmp_path / "teamhub.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError, match="mapping"):
            HubConfig.load(str(path))
        path.write_text("key: [unclosed\n")
        with pytest.raises(ConfigError, match="Cannot parse"):
            HubConfig.load(str(path))

    def test_problems_and_require(self):
        assert HubConfig().problems() == []
        config = HubConfig(namespace="user", ai_max_attempts=0)
        found = config.problems()
        assert len(found) == 2
        with pytest.raises(ConfigError, match="user_id is required"):
            config.require()

    def test_collection_path(self):
        assert HubConfig().collection_path("events") == "shared_events"
        with pytest.raises(ConfigError):
            HubConfig().collection_path("notes")

    def test_secrets_come_from_env(self, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "abc")
        monkeypatch.delenv("TEAMHUB_API_SECRET", raising=False)
        config = HubConfig()
        assert config.gemini_api_key == "abc"
        assert config.api_secret == ""


def test_from_config_builds_working_hub(db_path, monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    config = HubConfig(db_path=db_path, poll_interval=0)
    with TeamHub.from_config(config) as hub:
        assert not hub.assistant.configured
        hub.add_task("from config")
        assert len(hub.tasks) == 1


def test_from_config_refuses_bad_config(db_path):
    with pytest.raises(ConfigError):
        TeamHub.from_config(HubConfig(db_path=db_path, namespace="team"))
