"""
TeamHub configuration.

Settings come from config/teamhub.yaml (or the file named by TEAMHUB_CONFIG);
secrets come from the environment variables the file names. Unknown keys are
ignored so the bot sections can live in the same file.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import yaml

from .errors import ConfigError
from .schema import KINDS

CONFIG_PATH = Path(__file__).resolve().parents[2] / "config" / "teamhub.yaml"

NAMESPACES = ("shared", "user")


@dataclass
class HubConfig:
    """Runtime configuration for the hub and its surfaces."""

    # Store
    db_path: str = "~/.local/share/teamhub/hub.db"
    namespace: str = "shared"          # shared | user
    user_id: str = ""                  # required for the per-user namespace
    poll_interval: float = 30.0        # seconds; 0 disables cross-process polling

    # AI assistant
    ai_enabled: bool = True
    gemini_api_key_env: str = "GEMINI_API_KEY"
    gemini_model: str = "gemini-2.5-flash"
    gemini_endpoint: str = "https://generativelanguage.googleapis.com/v1beta/models"
    ai_max_attempts: int = 3
    ai_backoff: float = 1.0
    ai_timeout: float = 30.0

    # Notices and pings
    notice_ttl: float = 5.0
    ping_webhook_url: str = ""

    # Retention
    cleanup_days: int = 30

    # HTTP server
    server_host: str = "127.0.0.1"
    server_port: int = 8090
    api_secret_env: str = "TEAMHUB_API_SECRET"

    @classmethod
    def load(cls, path: Optional[str] = None) -> "HubConfig":
        """Load config from YAML file, falling back to defaults."""
        cfg_path = Path(path or os.environ.get("TEAMHUB_CONFIG") or CONFIG_PATH)
        if not cfg_path.exists():
            if path:
                raise ConfigError(f"Config file not found: {cfg_path}")
            return cls()
        try:
            with open(cfg_path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Cannot parse {cfg_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{cfg_path} must contain a mapping")
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    # ──────────────────────────────────────────
    # Secrets
    # ──────────────────────────────────────────

    @property
    def gemini_api_key(self) -> str:
        return os.environ.get(self.gemini_api_key_env, "")

    @property
    def api_secret(self) -> str:
        return os.environ.get(self.api_secret_env, "")

    # ──────────────────────────────────────────
    # Derived values
    # ──────────────────────────────────────────

    @property
    def resolved_db_path(self) -> str:
        return str(Path(self.db_path).expanduser())

    def collection_path(self, kind: str) -> str:
        """Store path of a collection under the configured namespace."""
        if kind not in KINDS:
            raise ConfigError(f"Unknown collection: {kind!r}")
        if self.namespace == "user":
            return f"users/{self.user_id}/{kind}"
        return f"shared_{kind}"

    def problems(self) -> List[str]:
        """Human-readable list of missing or invalid settings. Empty when usable."""
        found = []
        if not str(self.db_path or "").strip():
            found.append("db_path is empty")
        if self.namespace not in NAMESPACES:
            found.append(
                f"namespace must be one of {', '.join(NAMESPACES)} (got {self.namespace!r})"
            )
        elif self.namespace == "user" and not str(self.user_id or "").strip():
            found.append("user_id is required when namespace is 'user'")
        if self.ai_max_attempts < 1:
            found.append("ai_max_attempts must be at least 1")
        if self.cleanup_days < 0:
            found.append("cleanup_days must be zero or positive")
        return found

    def require(self) -> "HubConfig":
        """Raise ConfigError listing every problem, or return self."""
        found = self.problems()
        if found:
            raise ConfigError("TeamHub is not configured:\n  - " + "\n  - ".join(found))
        return self
