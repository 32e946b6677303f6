"""
Tests for bot_base and the hub bot's command handling.

Covers:
    - truncate(), make_action_id(), utc_now()
    - ParamValidator        — all validation rules
    - AuditLogger           — structured JSON audit trail
    - BotConfig             — config loading, error handling
    - BotBase._parse_command_args — positional, named, mixed parsing
    - hub_bot               — field parsing, drafts, confirmation flow
"""

import asyncio
import json
import textwrap
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
import yaml

from bot_base import (
    AuditLogger,
    BotBase,
    BotConfig,
    ConfigError,
    ParamValidator,
    ValidationError,
    make_action_id,
    truncate,
    utc_now,
)
from hub_bot import HubBot, format_draft, parse_fields

REPO_CONFIG = Path(__file__).parent.parent / "config" / "teamhub.yaml"
ALLOWED = 42


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Utility functions
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestTruncate:

    def test_short_text_unchanged(self):
        assert truncate("hello", 100) == "hello"

    def test_over_limit_truncated(self):
        result = truncate("x" * 200, 100)
        assert len(result) < 200
        assert "100 chars omitted" in result

    def test_default_limit_is_3500(self):
        assert "truncated" in truncate("x" * 4000)


class TestMakeActionId:

    def test_format(self):
        parts = make_action_id().split("-", 2)
        assert parts[0] == "act"
        assert parts[1].isdigit()
        assert len(parts[2]) == 8

    def test_uniqueness(self):
        assert len({make_action_id() for _ in range(100)}) == 100


def test_utc_now_format():
    ts = utc_now()
    assert ts.endswith("Z")
    assert len(ts) == 20  # 2026-10-17T10:30:00Z


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# ParamValidator
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestParamValidator:

    def setup_method(self):
        self.v = ParamValidator()

    def test_required_missing_raises(self):
        schema = {"id": {"type": "string", "required": True}}
        with pytest.raises(ValidationError, match="Missing required"):
            self.v.validate({}, schema)
        with pytest.raises(ValidationError, match="Missing required"):
            self.v.validate({"id": ""}, schema)

    def test_default_value_used(self):
        schema = {"of": {"type": "string", "default": "tasks"}}
        assert self.v.validate({}, schema) == {"of": "tasks"}
        assert self.v.validate({"of": "events"}, schema) == {"of": "events"}

    def test_allowed_values(self):
        schema = {"of": {"type": "string", "allowed": ["events", "tasks"]}}
        assert self.v.validate({"of": "events"}, schema) == {"of": "events"}
        with pytest.raises(ValidationError, match="Allowed: events, tasks"):
            self.v.validate({"of": "issues"}, schema)

    def test_pattern(self):
        schema = {"month": {"type": "string", "pattern": r"\d{4}-\d{2}"}}
        assert self.v.validate({"month": "2026-10"}, schema) == {"month": "2026-10"}
        with pytest.raises(ValidationError, match="Invalid format"):
            self.v.validate({"month": "October"}, schema)

    def test_integer_coercion_and_bounds(self):
        schema = {"days": {"type": "integer", "min": 0, "max": 3650}}
        assert self.v.validate({"days": "30"}, schema) == {"days": 30}
        with pytest.raises(ValidationError, match="must be an integer"):
            self.v.validate({"days": "soon"}, schema)
        with pytest.raises(ValidationError, match=">= 0"):
            self.v.validate({"days": "-1"}, schema)
        with pytest.raises(ValidationError, match="<= 3650"):
            self.v.validate({"days": "9999"}, schema)

    def test_unknown_params_rejected(self):
        with pytest.raises(ValidationError, match="Unknown parameters: extra"):
            self.v.validate({"extra": "x"}, {"id": {"type": "string"}})

    def test_unknown_type_in_schema(self):
        with pytest.raises(ValidationError, match="Unknown parameter type"):
            self.v.validate({"x": "1"}, {"x": {"type": "float"}})


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# AuditLogger
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestAuditLogger:

    def test_appends_json_lines(self, tmp_path):
        log_path = tmp_path / "audit.jsonl"
        audit = AuditLogger(log_path)
        audit.log(1, "dana", "hub_bot", "deltask", "act-1", "awaiting_confirmation")
        audit.log(1, "dana", "hub_bot", "deltask", "act-1", "failed", error="gone", extra=None)

        entries = [json.loads(line) for line in log_path.read_text().splitlines()]
        assert [e["status"] for e in entries] == ["awaiting_confirmation", "failed"]
        assert entries[1]["error"] == "gone"
        assert "extra" not in entries[1]

    def test_unwritable_path_is_logged_not_raised(self, tmp_path):
        audit = AuditLogger(tmp_path / "missing-dir" / "audit.jsonl")
        audit.log(1, "dana", "hub_bot", "board", "act-1", "complete")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# BotConfig
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def write_config(tmp_path, body):
    path = tmp_path / "teamhub.yaml"
    path.write_text(textwrap.dedent(body))
    return str(path)


class TestBotConfig:

    def test_loads_bot_section(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TEST_BOT_TOKEN", "tok")
        path = write_config(tmp_path, f"""
            global:
              audit_log: {tmp_path}/logs/audit.jsonl
            bots:
              hub_bot:
                token_env: TEST_BOT_TOKEN
                allowed_users: [42, "7"]
                commands:
                  board: {{description: Show the board}}
        """)
        cfg = BotConfig(path, "hub_bot")
        assert cfg.token == "tok"
        assert cfg.is_authorized(42)
        assert cfg.is_authorized(7)
        assert not cfg.is_authorized(8)
        assert cfg.get_command("board") == {"description": "Show the board"}
        assert cfg.get_command("nope") is None
        assert cfg.audit_log.exists()

    def test_unknown_bot(self, tmp_path):
        path = write_config(tmp_path, "bots:\n  other: {}\n")
        with pytest.raises(ConfigError, match="not found in config"):
            BotConfig(path, "hub_bot")

    def test_missing_token_env(self, tmp_path, monkeypatch):
        monkeypatch.delenv("TEST_BOT_TOKEN", raising=False)
        path = write_config(tmp_path, "bots:\n  hub_bot:\n    token_env: TEST_BOT_TOKEN\n")
        with pytest.raises(ConfigError, match="TEST_BOT_TOKEN is not set"):
            BotConfig(path, "hub_bot")

    def test_no_token_env_configured(self, tmp_path):
        path = write_config(tmp_path, "bots:\n  hub_bot: {}\n")
        with pytest.raises(ConfigError, match="no token_env"):
            BotConfig(path, "hub_bot")

    def test_unreadable_or_broken_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot read"):
            BotConfig(str(tmp_path / "missing.yaml"), "hub_bot")
        path = write_config(tmp_path, "bots: [unclosed\n")
        with pytest.raises(ConfigError, match="Cannot parse"):
            BotConfig(path, "hub_bot")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Argument parsing
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestParseCommandArgs:

    schema = {"id": {}, "status": {}}

    def parse(self, text):
        return BotBase._parse_command_args(None, text, self.schema)

    def test_positional(self):
        assert self.parse("/move abc doing") == {"id": "abc", "status": "doing"}

    def test_named(self):
        assert self.parse("/move status=doing id=abc") == {"id": "abc", "status": "doing"}

    def test_mixed_and_extra(self):
        assert self.parse("/move abc status=complete surplus") == {
            "id": "abc", "status": "complete",
        }

    def test_named_key_is_skipped_by_positionals(self):
        assert self.parse("/move status=doing abc") == {"id": "abc", "status": "doing"}

    def test_command_body_keeps_lines(self):
        assert BotBase.command_body("/task Ship it\n1. build") == "Ship it\n1. build"
        assert BotBase.command_body("/board") == ""


def test_parse_fields():
    body = "name: Client demo\nStart: 2026-10-20\nSession Type = Demo\nnoise line\nresources: Proto, Spot"
    assert parse_fields(body) == {
        "name": "Client demo",
        "start_date": "2026-10-20",
        "session_type": "Demo",
        "resources": "Proto, Spot",
    }


def test_parse_fields_splits_on_first_separator():
    assert parse_fields("room=B:12") == {"room": "B:12"}
    assert parse_fields("location: a=b") == {"location": "a=b"}


def test_format_draft():
    assert format_draft({}) == "📝 Draft is empty."
    text = format_draft({"name": "Demo", "resources": ["Proto", "Spot"]})
    assert "name: Demo" in text
    assert "resources: Proto, Spot" in text
    assert "not saved" in text


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# HubBot handlers
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@pytest.fixture
def bot(tmp_path, monkeypatch, hub):
    raw = yaml.safe_load(REPO_CONFIG.read_text())
    raw["global"]["audit_log"] = str(tmp_path / "audit.jsonl")
    raw["bots"]["hub_bot"]["allowed_users"] = [ALLOWED]
    path = tmp_path / "teamhub.yaml"
    path.write_text(yaml.safe_dump(raw))
    monkeypatch.setenv(raw["bots"]["hub_bot"]["token_env"], "tok")
    return HubBot(path, hub=hub)


def message(text, user_id=ALLOWED):
    update = MagicMock()
    update.effective_user.id = user_id
    update.effective_user.username = "dana"
    update.message.text = text
    update.message.reply_text = AsyncMock()
    return update


def send(handler, text, user_id=ALLOWED):
    update = message(text, user_id)
    asyncio.run(handler(update, None))
    return [c.args[0] for c in update.message.reply_text.call_args_list]


def test_unauthorized_user_rejected(bot):
    replies = send(bot.cmd_board, "/board", user_id=99)
    assert replies == ["⛔ Unauthorized. This incident has been logged."]


def test_board_empty_state(bot):
    assert send(bot.cmd_board, "/board") == ["📭 The board is empty. Add a task to get started."]


def test_task_then_move(bot, hub):
    replies = send(bot.cmd_task, "/task Ship it\n1. build")
    assert replies[0].startswith("📝 Task added:")
    task = hub.tasks.records[0]
    assert task.steps == "1. build"

    replies = send(bot.cmd_move, f"/move {task.id[:8]} complete")
    assert replies == ["✅ Ship it → complete"]

    replies = send(bot.cmd_move, f"/move {task.id[:8]} blocked")
    assert replies[0].startswith("⚠️")


def test_hub_error_becomes_reply(bot, tmp_path):
    replies = send(bot.cmd_step, "/advance nope")
    assert replies[0].startswith("⚠️")
    entries = [json.loads(line) for line in (tmp_path / "audit.jsonl").read_text().splitlines()]
    assert entries[-1]["status"] == "failed"


def test_delete_needs_confirmation(bot, hub):
    task_id = hub.add_task("Throwaway")
    replies = send(bot.cmd_delete, f"/deltask {task_id[:8]}")
    assert "Confirmation required" in replies[0]
    assert hub.tasks.get(task_id) is not None

    assert send(bot.handle_cancel, "/cancel") == ["❌ Cancelled /deltask."]
    assert hub.tasks.get(task_id) is not None

    send(bot.cmd_delete, f"/deltask {task_id[:8]}")
    replies = send(bot.handle_confirm, "/confirm")
    assert replies == [f"🗑 Deleted {task_id[:8]}"]
    assert hub.tasks.get(task_id) is None
    assert send(bot.handle_confirm, "/confirm") == ["ℹ️ Nothing pending confirmation."]


def test_draft_set_save(bot, hub):
    assert send(bot.cmd_save, "/save") == ["ℹ️ No draft to save."]
    send(bot.cmd_set, "/set name=Client demo")
    send(bot.cmd_set, "/set start=2026-10-20")
    replies = send(bot.cmd_save, "/save")
    # Missing end date and POC: the draft survives the failed save
    assert replies[0].startswith("⚠️")
    assert len(hub.events) == 0

    send(bot.cmd_set, "/set end=2026-10-20")
    send(bot.cmd_set, "/set poc=Dana")
    replies = send(bot.cmd_save, "/save")
    assert replies[0].startswith("✅ Event saved:")
    assert hub.events.records[0].name == "Client demo"
    assert send(bot.cmd_draft, "/draft") == ["ℹ️ No draft. Start one with /extract."]


def test_calendar_rejects_bad_month(bot):
    replies = send(bot.cmd_calendar, "/calendar month=2026-13")
    assert replies == ["⚠️ Invalid month: 2026-13"]


def test_help_lists_commands(bot):
    text = bot.help_text()
    assert "/board" in text
    assert "/confirm" in text
