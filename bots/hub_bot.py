#!/usr/bin/env python3
"""
TeamHub Bot
───────────
Events, the task board and the issue list from Telegram.

Setup:
    export TEAMHUB_BOT_TOKEN=your_token_here
    export GEMINI_API_KEY=your_key_here      # optional, enables AI commands
    python bots/hub_bot.py

Commands:
    /events [search]            /calendar [month=YYYY-MM] [day=YYYY-MM-DD]
    /addevent  (key: value lines)
    /extract <report text>      /draft  /set key=value  /save  /discard
    /export <id>  /delevent <id>  /cleanup_events [days]
    /board  /task <title>  /move <id> <status>  /advance <id>  /retreat <id>
    /edittask <id> (key: value lines)  /deltask <id>  /clear_done
    /issues  /issue (key: value lines)  /diagnose <id>  /ping <id>  /delissue <id>
    /summary <events|tasks>  /stats
    /help
"""

import sys
from datetime import date
from pathlib import Path

from telegram import Update
from telegram.ext import CommandHandler, ContextTypes

# Allow running from project root or bots/ directory
sys.path.insert(0, str(Path(__file__).parent))
sys.path.insert(0, str(Path(__file__).parent.parent))
from bot_base import BotBase, ValidationError, truncate

from pkg.hub import views
from pkg.hub.errors import ConfigError
from pkg.hub.schema import EVENTS, ISSUES, TASKS, parse_day

CONFIG_PATH = Path(__file__).parent.parent / "config" / "teamhub.yaml"

# Short names accepted in key: value bodies
FIELD_SHORTCUTS = {
    "start": "start_date",
    "end": "end_date",
    "type": "session_type",
    "session": "session_type",
    "tried": "steps_taken",
    "notes": "steps",
}


def parse_fields(body: str) -> dict:
    """
    Parse a multi-line message body into record fields.

        name: Quarterly review
        start: 2026-10-20
        resources: Proto, Spot

    Lines split on the first of ":" or "=", and lines with neither are
    ignored. Keys are lower-cased and spaces become underscores.
    """
    fields = {}
    for line in (body or "").splitlines():
        line = line.strip()
        found = [i for i in (line.find(":"), line.find("=")) if i >= 0]
        if not found:
            continue
        sep = line[min(found)]
        key, _, value = line.partition(sep)
        key = key.strip().lower().replace(" ", "_")
        if not key:
            continue
        fields[FIELD_SHORTCUTS.get(key, key)] = value.strip()
    return fields


def format_draft(draft: dict) -> str:
    if not draft:
        return "📝 Draft is empty."
    lines = ["📝 Event draft (not saved):"]
    for key, value in draft.items():
        if isinstance(value, list):
            value = ", ".join(value)
        lines.append(f"  {key}: {value}")
    lines.append("\n/set key=value to edit · /save to commit · /discard to drop")
    return "\n".join(lines)


class HubBot(BotBase):

    def __init__(self, config_path: str = None, hub=None):
        super().__init__(str(config_path or CONFIG_PATH), "hub_bot", hub=hub)
        # user_id → event draft awaiting review
        self._drafts: dict[int, dict] = {}

    def register_handlers(self, app):
        super().register_handlers(app)  # registers /help, /confirm, /cancel
        handlers = {
            "events": self.cmd_events,
            "calendar": self.cmd_calendar,
            "addevent": self.cmd_addevent,
            "extract": self.cmd_extract,
            "draft": self.cmd_draft,
            "set": self.cmd_set,
            "save": self.cmd_save,
            "discard": self.cmd_discard,
            "export": self.cmd_export,
            "delevent": self.cmd_delete,
            "cleanup_events": self.cmd_cleanup_events,
            "board": self.cmd_board,
            "task": self.cmd_task,
            "move": self.cmd_move,
            "advance": self.cmd_step,
            "retreat": self.cmd_step,
            "edittask": self.cmd_edittask,
            "deltask": self.cmd_delete,
            "clear_done": self.cmd_clear_done,
            "issues": self.cmd_issues,
            "issue": self.cmd_issue,
            "diagnose": self.cmd_diagnose,
            "ping": self.cmd_ping,
            "delissue": self.cmd_delete,
            "summary": self.cmd_summary,
            "stats": self.cmd_stats,
        }
        for name, handler in handlers.items():
            app.add_handler(CommandHandler(name, handler))

    async def _params(self, update: Update, command_name: str) -> dict | None:
        """Validated params for a command, or None after replying with the problem."""
        try:
            return self.parse_params(command_name, update.message.text)
        except ValidationError as e:
            await update.message.reply_text(f"⚠️ {e}")
            return None

    # ──────────────────────────────────────────
    # Events
    # ──────────────────────────────────────────

    async def cmd_events(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        query = self.command_body(update.message.text)
        text = views.render_event_list(self.hub.events.records, query)
        await update.message.reply_text(truncate(text))

    async def cmd_calendar(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        params = await self._params(update, "calendar")
        if params is None:
            return
        events = self.hub.events.records
        try:
            if params.get("day"):
                text = views.render_day(events, parse_day(params["day"]))
            else:
                today = date.today()
                year, month = today.year, today.month
                if params.get("month"):
                    year, month = (int(p) for p in params["month"].split("-"))
                if not 1 <= month <= 12:
                    raise ValueError(f"Invalid month: {params['month']}")
                text = views.render_calendar(events, year, month, today)
        except ValueError as e:
            await update.message.reply_text(f"⚠️ {e}")
            return
        await update.message.reply_text(f"<pre>{truncate(text)}</pre>", parse_mode="HTML")

    async def cmd_addevent(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        fields = parse_fields(self.command_body(update.message.text))
        if not fields:
            await update.message.reply_text(
                "Usage:\n/addevent\nname: Client demo\nstart: 2026-10-20\n"
                "end: 2026-10-20\npoc: Dana\nresources: Proto, Spot"
            )
            return
        ok, record_id = await self.call_hub(update, "addevent", self.hub.add_event, fields)
        if ok:
            await update.message.reply_text(f"✅ Event added: {views.short_id(record_id)}")

    async def cmd_extract(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        text = self.command_body(update.message.text)
        if not text:
            await update.message.reply_text("Usage: /extract <pasted report text>")
            return
        await update.message.reply_text("⏳ Extracting…")
        ok, draft = await self.call_hub(update, "extract", self.hub.extract_event, text)
        if not ok or draft is None:
            return
        self._drafts[update.effective_user.id] = draft
        await update.message.reply_text(format_draft(draft))

    async def cmd_draft(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        draft = self._drafts.get(update.effective_user.id)
        if draft is None:
            await update.message.reply_text("ℹ️ No draft. Start one with /extract.")
            return
        await update.message.reply_text(format_draft(draft))

    async def cmd_set(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        draft = self._drafts.setdefault(update.effective_user.id, {})
        changes = parse_fields(self.command_body(update.message.text))
        if not changes:
            await update.message.reply_text("Usage: /set key=value")
            return
        for key, value in changes.items():
            if key == "resources":
                value = [v.strip() for v in value.split(",") if v.strip()]
            if value in ("", []):
                draft.pop(key, None)
            else:
                draft[key] = value
        await update.message.reply_text(format_draft(draft))

    async def cmd_save(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        user_id = update.effective_user.id
        draft = self._drafts.get(user_id)
        if not draft:
            await update.message.reply_text("ℹ️ No draft to save.")
            return
        ok, record_id = await self.call_hub(update, "save", self.hub.add_event, dict(draft))
        if ok:
            # Keep the draft on failure so it can be fixed with /set
            self._drafts.pop(user_id, None)
            await update.message.reply_text(f"✅ Event saved: {views.short_id(record_id)}")

    async def cmd_discard(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        if self._drafts.pop(update.effective_user.id, None) is None:
            await update.message.reply_text("ℹ️ No draft to discard.")
        else:
            await update.message.reply_text("🗑 Draft discarded.")

    async def cmd_export(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        params = await self._params(update, "export")
        if params is None:
            return
        ok, text = await self.call_hub(update, "export", self.hub.export_event, params["id"])
        if ok:
            await update.message.reply_text(f"<pre>{text}</pre>", parse_mode="HTML")

    async def cmd_cleanup_events(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        params = await self._params(update, "cleanup_events")
        if params is None:
            return
        days = params.get("days", self.hub.config.cleanup_days)
        await self.request_confirmation(
            update,
            "cleanup_events",
            f"Delete every event that ended more than {days} days ago.",
            lambda: self.hub.cleanup_events(days=days).summary(),
        )

    # ──────────────────────────────────────────
    # Tasks
    # ──────────────────────────────────────────

    async def cmd_board(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        await update.message.reply_text(truncate(views.render_board(self.hub.tasks.records)))

    async def cmd_task(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        body = self.command_body(update.message.text)
        title, _, steps = body.partition("\n")
        if not title.strip():
            await update.message.reply_text("Usage: /task <title>\n[steps on following lines]")
            return
        ok, record_id = await self.call_hub(
            update, "task", self.hub.add_task, title.strip(), steps.strip()
        )
        if ok:
            await update.message.reply_text(f"📝 Task added: {views.short_id(record_id)}")

    async def cmd_move(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        params = await self._params(update, "move")
        if params is None:
            return
        ok, task = await self.call_hub(
            update, "move", self.hub.move_task, params["id"], params["status"]
        )
        if ok:
            await update.message.reply_text(
                f"{views.STATUS_EMOJI[task.status]} {task.title} → {task.status.value}"
            )

    async def cmd_step(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handles /advance and /retreat."""
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        command = update.message.text.split()[0].lstrip("/").split("@")[0]
        params = await self._params(update, command)
        if params is None:
            return
        fn = self.hub.advance_task if command == "advance" else self.hub.retreat_task
        ok, task = await self.call_hub(update, command, fn, params["id"])
        if ok:
            await update.message.reply_text(
                f"{views.STATUS_EMOJI[task.status]} {task.title} → {task.status.value}"
            )

    async def cmd_edittask(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        body = self.command_body(update.message.text)
        ref, _, rest = body.partition("\n")
        fields = parse_fields(rest)
        if not ref.strip() or not fields:
            await update.message.reply_text("Usage:\n/edittask <id>\ntitle: New title\nsteps: ...")
            return
        ok, task = await self.call_hub(update, "edittask", self.hub.edit_task, ref.strip(), fields)
        if ok:
            await update.message.reply_text(f"✏️ Updated {views.short_id(task.id)}: {task.title}")

    async def cmd_clear_done(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        count = views.stats(TASKS, self.hub.tasks.records)["complete"]
        await self.request_confirmation(
            update,
            "clear_done",
            f"Delete {count} completed task(s) from the board.",
            lambda: self.hub.cleanup_completed().summary(),
        )

    # ──────────────────────────────────────────
    # Issues
    # ──────────────────────────────────────────

    async def cmd_issues(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        await update.message.reply_text(truncate(views.render_issue_list(self.hub.issues.records)))

    async def cmd_issue(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        fields = parse_fields(self.command_body(update.message.text))
        if not fields:
            await update.message.reply_text(
                "Usage:\n/issue\ntitle: Projector offline\ndescription: No signal on HDMI 2\n"
                "urgency: high\ncontact: Sam"
            )
            return
        ok, record_id = await self.call_hub(update, "issue", self.hub.report_issue, fields)
        if ok:
            await update.message.reply_text(f"🛠 Issue reported: {views.short_id(record_id)}")

    async def cmd_diagnose(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        params = await self._params(update, "diagnose")
        if params is None:
            return
        await update.message.reply_text("⏳ Asking the assistant…")
        ok, advice = await self.call_hub(update, "diagnose", self.hub.diagnose_issue, params["id"])
        if ok and advice:
            await update.message.reply_text(truncate(f"🩺 AI Diagnostic Analysis\n\n{advice}"))

    async def cmd_ping(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        params = await self._params(update, "ping")
        if params is None:
            return
        ok, notice = await self.call_hub(update, "ping", self.hub.ping_team, params["id"])
        if ok:
            await update.message.reply_text(notice.text)

    # ──────────────────────────────────────────
    # Shared
    # ──────────────────────────────────────────

    async def cmd_delete(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handles /delevent, /deltask and /delissue behind a confirmation."""
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        command = update.message.text.split()[0].lstrip("/").split("@")[0]
        kind = {"delevent": EVENTS, "deltask": TASKS, "delissue": ISSUES}[command]
        params = await self._params(update, command)
        if params is None:
            return
        ref = params["id"]
        await self.request_confirmation(
            update,
            command,
            f"Delete {kind[:-1]} {ref}.",
            lambda: f"🗑 Deleted {views.short_id(self.hub.delete(kind, ref))}",
        )

    async def cmd_summary(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        params = await self._params(update, "summary")
        if params is None:
            return
        fn = self.hub.summarize_events if params["of"] == EVENTS else self.hub.summarize_board
        await update.message.reply_text("⏳ Summarizing…")
        ok, text = await self.call_hub(update, "summary", fn)
        if ok and text:
            await update.message.reply_text(truncate(text))

    async def cmd_stats(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return
        lines = ["📊 TeamHub"]
        for kind, counts in self.hub.stats().items():
            detail = ", ".join(f"{k} {v}" for k, v in counts.items() if k != "total")
            lines.append(f"{kind}: {counts['total']} ({detail})")
        await update.message.reply_text("\n".join(lines))


if __name__ == "__main__":
    try:
        bot = HubBot()
    except ConfigError as e:
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(2)
    bot.run()
