#!/usr/bin/env python3
"""
TeamHub Bot Base
────────────────
Shared logic for TeamHub Telegram bots.
A bot subclasses BotBase and registers its handlers.

Components:
    BotConfig       — loads YAML config, resolves token, sets up paths
    ParamValidator   — validates & coerces command parameters against schema
    AuditLogger      — appends structured JSON lines to audit log
    BotBase          — base class with auth, parsing, hub calls, confirmation

Dependencies:
    pip install python-telegram-bot==20.* pyyaml

Usage:
    See hub_bot.py
"""

import asyncio
import json
import logging
import os
import re
import sys
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

import yaml
from telegram import Update, BotCommand
from telegram.ext import Application, CommandHandler, ContextTypes

from pkg.hub.config import HubConfig
from pkg.hub.errors import ConfigError, HubError
from pkg.hub.teamhub import TeamHub

logger = logging.getLogger(__name__)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Utilities
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def utc_now() -> str:
    """ISO-8601 UTC timestamp."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def make_action_id() -> str:
    """Generate a sortable unique action ID (ms-precision timestamp + random hex)."""
    ts = int(time.time() * 1000)
    rand = uuid.uuid4().hex[:8]
    return f"act-{ts}-{rand}"


def truncate(text: str, max_chars: int = 3500) -> str:
    """Truncate text to fit in a single Telegram message (4096 char limit)."""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + f"\n…[truncated, {len(text) - max_chars} chars omitted]"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Exceptions
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ValidationError(Exception):
    """Raised when command parameters fail validation."""
    pass


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# BotConfig — configuration loader
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class BotConfig:
    """
    Loads and exposes config for a single bot.

    Reads the `bots.<name>` section of teamhub.yaml, resolves the bot token
    from environment variables, sets up the audit path, and builds the user
    allowlist.
    """

    def __init__(self, config_path: str, bot_name: str):
        try:
            with open(config_path) as f:
                raw = yaml.safe_load(f) or {}
        except OSError as e:
            raise ConfigError(f"Cannot read config {config_path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Cannot parse {config_path}: {e}") from e

        self.global_cfg = raw.get("global", {}) or {}
        self.bot_name = bot_name

        bots = raw.get("bots", {}) or {}
        if bot_name not in bots:
            raise ConfigError(
                f"Bot '{bot_name}' not found in config. "
                f"Available: {list(bots.keys())}"
            )

        self.bot_cfg = bots[bot_name] or {}

        # ── Resolve token from environment ──
        token_env = self.bot_cfg.get("token_env")
        if not token_env:
            raise ConfigError(f"Bot '{bot_name}' has no token_env configured")
        self.token = os.environ.get(token_env)
        if not self.token:
            raise ConfigError(
                f"Environment variable {token_env} is not set.\n"
                f"Set it:  export {token_env}=your_bot_token\n"
                f"Get a token from @BotFather on Telegram."
            )

        # ── Allowlist (numeric Telegram user IDs as strings for comparison) ──
        self.allowed_users = [
            str(uid) for uid in self.bot_cfg.get("allowed_users", []) or []
        ]
        self.commands = self.bot_cfg.get("commands", {}) or {}

        # ── Audit log path ──
        audit_path_str = self.global_cfg.get(
            "audit_log", "~/.local/share/teamhub/audit.jsonl"
        )
        self.audit_log = Path(audit_path_str).expanduser()
        try:
            self.audit_log.parent.mkdir(parents=True, exist_ok=True)
            self.audit_log.touch(exist_ok=True)
        except PermissionError:
            fallback = Path(__file__).parent.parent / "logs" / "audit.jsonl"
            fallback.parent.mkdir(parents=True, exist_ok=True)
            fallback.touch(exist_ok=True)
            self.audit_log = fallback
            logger.warning(
                f"Cannot write to {audit_path_str}, using {fallback}"
            )

    def is_authorized(self, user_id: int) -> bool:
        """Check if a Telegram user ID is in the allowlist."""
        return str(user_id) in self.allowed_users

    def get_command(self, name: str) -> dict | None:
        """Return a command config dict, or None if not found."""
        return self.commands.get(name)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# ParamValidator — input validation & coercion
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class ParamValidator:
    """
    Validates and coerces command parameters against config schema.

    Supports:
        - required / optional with defaults
        - type coercion (string, integer)
        - allowed-value lists
        - regex pattern matching
        - min/max bounds for integers
        - rejection of unknown parameters
    """

    def validate(self, params: dict, schema: dict) -> dict:
        """
        Validate and coerce params against schema.

        Returns:
            dict of validated, coerced parameters.

        Raises:
            ValidationError with a user-friendly message on failure.
        """
        result = {}

        for param_name, param_schema in schema.items():
            value = params.get(param_name)
            param_type = param_schema.get("type", "string")
            required = param_schema.get("required", False)
            default = param_schema.get("default")

            # ── Missing value handling ──
            if value is None or value == "":
                if required:
                    raise ValidationError(
                        f"Missing required parameter: {param_name}"
                    )
                if default is not None:
                    result[param_name] = default
                continue

            # ── Type: string ──
            if param_type == "string":
                value = str(value)

                allowed = param_schema.get("allowed")
                if allowed and value not in allowed:
                    raise ValidationError(
                        f"Invalid value for {param_name}: '{value}'. "
                        f"Allowed: {', '.join(str(a) for a in allowed)}"
                    )

                pattern = param_schema.get("pattern")
                if pattern and not re.fullmatch(pattern, value):
                    raise ValidationError(
                        f"Invalid format for {param_name}: '{value}' "
                        f"does not match pattern {pattern}"
                    )

            # ── Type: integer ──
            elif param_type == "integer":
                try:
                    value = int(value)
                except (ValueError, TypeError):
                    raise ValidationError(
                        f"Parameter {param_name} must be an integer, "
                        f"got: '{value}'"
                    )

                min_val = param_schema.get("min")
                max_val = param_schema.get("max")
                if min_val is not None and value < min_val:
                    raise ValidationError(
                        f"Parameter {param_name} must be >= {min_val}, "
                        f"got: {value}"
                    )
                if max_val is not None and value > max_val:
                    raise ValidationError(
                        f"Parameter {param_name} must be <= {max_val}, "
                        f"got: {value}"
                    )

            else:
                raise ValidationError(
                    f"Unknown parameter type in schema: {param_type}"
                )

            result[param_name] = value

        # ── Reject unknown parameters ──
        known = set(schema.keys())
        unknown = set(params.keys()) - known
        if unknown:
            raise ValidationError(
                f"Unknown parameters: {', '.join(sorted(unknown))}"
            )

        return result


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# AuditLogger — structured JSON audit trail
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class AuditLogger:
    """
    Appends structured JSON audit entries to a .jsonl file.
    Every command, confirmation, cancellation, and result is recorded.
    """

    def __init__(self, log_path: Path):
        self.log_path = log_path

    def log(
        self,
        user_id: int,
        username: str,
        bot: str,
        command: str,
        action_id: str,
        status: str,
        **extra,
    ):
        """Append one audit entry. Extra kwargs are merged in."""
        entry = {
            "ts": utc_now(),
            "user_id": user_id,
            "username": username,
            "bot": bot,
            "command": command,
            "action_id": action_id,
            "status": status,
        }
        # Merge extras, filtering None values for cleanliness
        for k, v in extra.items():
            if v is not None:
                entry[k] = v

        try:
            with open(self.log_path, "a") as f:
                f.write(json.dumps(entry, ensure_ascii=False) + "\n")
        except Exception as e:
            logger.error(f"Failed to write audit log: {e}")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# BotBase — base class for TeamHub bots
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class BotBase:
    """
    Base class for TeamHub bots.

    Subclass contract:
        1. Call super().__init__(config_path, bot_name)
        2. Override register_handlers() — call super() then add own handlers
        3. Call self.run() to start the bot

    Provides:
        - User authorization (numeric Telegram ID allowlist)
        - Command argument parsing (positional + named)
        - Parameter validation & coercion
        - Hub calls off the event loop, with errors turned into replies
        - Confirmation flow for destructive commands
        - Help command with auto-generated usage
        - Structured audit logging
    """

    def __init__(self, config_path: str, bot_name: str, hub: TeamHub = None):
        self.cfg = BotConfig(config_path, bot_name)
        self.validator = ParamValidator()
        self.audit = AuditLogger(self.cfg.audit_log)

        if hub is None:
            hub = TeamHub.from_config(HubConfig.load(config_path))
        self.hub = hub

        # user_id → {action_id, command, summary, action}
        self._pending_confirms: dict[int, dict] = {}

        logging.basicConfig(
            level=logging.INFO,
            format=f"%(asctime)s [{bot_name}] %(levelname)s: %(message)s",
            handlers=[logging.StreamHandler(sys.stdout)],
        )

    # ──────────────────────────────────────────
    # Auth + parsing helpers
    # ──────────────────────────────────────────

    def _is_authorized(self, update: Update) -> bool:
        """Check if the message sender is in the allowlist."""
        return self.cfg.is_authorized(update.effective_user.id)

    async def _reject_unauthorized(self, update: Update):
        """Log and reply to unauthorized access attempts."""
        user = update.effective_user
        logger.warning(
            f"Unauthorized access attempt: user_id={user.id}, "
            f"username={user.username}, name={user.full_name}"
        )
        self.audit.log(
            user_id=user.id,
            username=user.username or "",
            bot=self.cfg.bot_name,
            command="UNAUTHORIZED",
            action_id="",
            status="rejected",
        )
        await update.message.reply_text(
            "⛔ Unauthorized. This incident has been logged."
        )

    def _parse_command_args(self, text: str, command_schema: dict) -> dict:
        """
        Parse command text into a params dict.

        Supports three forms:
            /cmd arg1 arg2            → positional, matched to schema key order
            /cmd key1=val1 key2=val2  → named
            /cmd arg1 key2=val2       → mixed

        Returns:
            dict of param_name → raw string value
        """
        parts = text.split()[1:]  # drop the /command itself
        named = {part.partition("=")[0] for part in parts if "=" in part}
        # Positionals only fill keys not given by name anywhere in the text
        schema_keys = [k for k in command_schema.keys() if k not in named]
        result = {}
        positional_idx = 0

        for part in parts:
            if "=" in part:
                key, _, value = part.partition("=")
                result[key] = value
            else:
                if positional_idx < len(schema_keys):
                    result[schema_keys[positional_idx]] = part
                    positional_idx += 1
                # Extra positional args beyond schema size are silently dropped

        return result

    def parse_params(self, command_name: str, text: str) -> dict:
        """Parse and validate a command's arguments against its config schema."""
        schema = (self.cfg.get_command(command_name) or {}).get("params", {})
        raw = self._parse_command_args(text or "", schema)
        return self.validator.validate(raw, schema)

    @staticmethod
    def command_body(text: str) -> str:
        """Everything after the /command, keeping newlines."""
        parts = (text or "").split(None, 1)
        return parts[1].strip() if len(parts) > 1 else ""

    # ──────────────────────────────────────────
    # Hub calls
    # ──────────────────────────────────────────

    async def call_hub(
        self,
        update: Update,
        command_name: str,
        fn: Callable[..., Any],
        *args,
        **kwargs,
    ) -> tuple[bool, Any]:
        """
        Run a blocking hub intent off the event loop.

        Returns (ok, result). On a HubError the user gets a warning reply,
        the failure is audited, and ok is False.
        """
        user = update.effective_user
        action_id = make_action_id()
        try:
            result = await asyncio.to_thread(fn, *args, **kwargs)
        except HubError as e:
            self.audit.log(
                user_id=user.id,
                username=user.username or "",
                bot=self.cfg.bot_name,
                command=command_name,
                action_id=action_id,
                status="failed",
                error=str(e),
            )
            await update.message.reply_text(f"⚠️ {e}")
            return False, None

        self.audit.log(
            user_id=user.id,
            username=user.username or "",
            bot=self.cfg.bot_name,
            command=command_name,
            action_id=action_id,
            status="complete",
        )
        return True, result

    # ──────────────────────────────────────────
    # Confirmation handlers
    # ──────────────────────────────────────────

    async def request_confirmation(
        self,
        update: Update,
        command_name: str,
        summary: str,
        action: Callable[[], str],
    ):
        """Hold a destructive action until the user replies /confirm."""
        user = update.effective_user
        action_id = make_action_id()
        self._pending_confirms[user.id] = {
            "action_id": action_id,
            "command": command_name,
            "summary": summary,
            "action": action,
        }
        self.audit.log(
            user_id=user.id,
            username=user.username or "",
            bot=self.cfg.bot_name,
            command=command_name,
            action_id=action_id,
            status="awaiting_confirmation",
        )
        await update.message.reply_text(
            f"⚠️ Confirmation required\n\n{summary}\n\n"
            "Reply /confirm to proceed or /cancel to abort."
        )

    async def handle_confirm(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ):
        """Handle /confirm — run a previously-held action."""
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return

        user = update.effective_user
        pending = self._pending_confirms.pop(user.id, None)

        if not pending:
            await update.message.reply_text(
                "ℹ️ Nothing pending confirmation."
            )
            return

        self.audit.log(
            user_id=user.id,
            username=user.username or "",
            bot=self.cfg.bot_name,
            command=pending["command"],
            action_id=pending["action_id"],
            status="confirmed",
        )

        ok, reply = await self.call_hub(update, pending["command"], pending["action"])
        if ok:
            await update.message.reply_text(truncate(str(reply)))

    async def handle_cancel(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ):
        """Handle /cancel — discard a confirmation-held action."""
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return

        user = update.effective_user
        pending = self._pending_confirms.pop(user.id, None)

        if not pending:
            await update.message.reply_text(
                "ℹ️ Nothing pending to cancel."
            )
            return

        self.audit.log(
            user_id=user.id,
            username=user.username or "",
            bot=self.cfg.bot_name,
            command=pending["command"],
            action_id=pending["action_id"],
            status="cancelled",
        )

        await update.message.reply_text(
            f"❌ Cancelled /{pending['command']}."
        )

    # ──────────────────────────────────────────
    # Help handler
    # ──────────────────────────────────────────

    def help_text(self) -> str:
        """Usage lines generated from the command schemas in config."""
        lines = [f"{self.cfg.bot_name} — Commands\n"]

        for cmd_name, cmd_cfg in self.cfg.commands.items():
            cmd_cfg = cmd_cfg or {}
            desc = cmd_cfg.get("description", "")
            params = cmd_cfg.get("params", {})
            param_parts = []

            for p_name, p_schema in params.items():
                required = p_schema.get("required", False)
                default = p_schema.get("default")
                if required:
                    param_parts.append(f"<{p_name}>")
                elif default is not None:
                    param_parts.append(f"[{p_name}={default}]")
                else:
                    param_parts.append(f"[{p_name}]")

            usage = cmd_cfg.get("usage") or " ".join(param_parts)
            lines.append(f"/{cmd_name} {usage}".rstrip())
            lines.append(f"  ↳ {desc}\n")

        lines.append("/confirm — confirm a pending action")
        lines.append("/cancel — cancel a pending action")
        lines.append("/help — show this message")
        return "\n".join(lines)

    async def handle_help(
        self, update: Update, context: ContextTypes.DEFAULT_TYPE
    ):
        """Handle /help — auto-generate usage from config schema."""
        if not self._is_authorized(update):
            await self._reject_unauthorized(update)
            return

        await update.message.reply_text(self.help_text())

    # ──────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────

    def register_handlers(self, app: Application):
        """
        Register base command handlers.
        Subclasses MUST call super().register_handlers(app)
        before adding their own handlers.
        """
        app.add_handler(CommandHandler("help", self.handle_help))
        app.add_handler(CommandHandler("start", self.handle_help))
        app.add_handler(CommandHandler("confirm", self.handle_confirm))
        app.add_handler(CommandHandler("cancel", self.handle_cancel))

    async def set_bot_commands(self, app: Application):
        """Set command suggestions in Telegram UI (autocomplete menu)."""
        commands = []
        for cmd_name, cmd_cfg in self.cfg.commands.items():
            desc = (cmd_cfg or {}).get("description", cmd_name)
            commands.append(BotCommand(cmd_name, desc[:256]))
        commands.append(BotCommand("help", "Show available commands"))
        await app.bot.set_my_commands(commands)

    def run(self):
        """Build Telegram Application, register handlers, and start polling."""
        app = Application.builder().token(self.cfg.token).build()
        self.register_handlers(app)

        async def post_init(application):
            await self.set_bot_commands(application)

        app.post_init = post_init
        logger.info(f"Starting {self.cfg.bot_name}…")
        try:
            app.run_polling(drop_pending_updates=True)
        finally:
            self.hub.close()
