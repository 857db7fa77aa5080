"""
Taskflow configuration.

Every setting is read from the environment so that the same build runs in
development, CI and production without code changes.

Environment variables:
- TASKFLOW_STATE_DIR: directory for the task snapshot and JSONL logs
- TASKFLOW_LOG_LEVEL: root log level (default INFO)
- TASKFLOW_ROLE_PATHS_FILE: YAML override for the role base-path table
- TASKFLOW_ACCOUNTS_FILE: YAML file seeding the account directory
- TASKFLOW_REQUIRE_FINAL_FOR_REVIEW: require a final attachment before any move into review
- TASKFLOW_NOTIFICATION_WEBHOOK_URL: optional outbound push channel
- TASKFLOW_HOST / TASKFLOW_PORT: uvicorn bind address
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------
DEFAULT_STATE_DIR = Path("data/taskflow")
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

TASKS_SNAPSHOT_FILE = "tasks.json"
TRANSITION_AUDIT_FILE = "transition_audit.jsonl"
ATTACHMENTS_FILE = "attachments.jsonl"
COMMENTS_FILE = "comments.jsonl"
NOTIFICATIONS_FILE = "notifications.jsonl"


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_path(name: str) -> Optional[Path]:
    value = os.getenv(name, "").strip()
    return Path(value) if value else None


@dataclass(frozen=True)
class Settings:
    """
    Runtime settings for the engine and its HTTP surface.

    state_dir=None keeps everything in memory (used by tests).
    """
    state_dir: Optional[Path] = DEFAULT_STATE_DIR
    log_level: str = "INFO"
    role_paths_file: Optional[Path] = None
    accounts_file: Optional[Path] = None
    require_final_for_review: bool = False
    notification_webhook_url: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from TASKFLOW_* environment variables."""
        return cls(
            state_dir=Path(os.getenv("TASKFLOW_STATE_DIR", str(DEFAULT_STATE_DIR))),
            log_level=os.getenv("TASKFLOW_LOG_LEVEL", "INFO").upper(),
            role_paths_file=_env_path("TASKFLOW_ROLE_PATHS_FILE"),
            accounts_file=_env_path("TASKFLOW_ACCOUNTS_FILE"),
            require_final_for_review=_env_flag("TASKFLOW_REQUIRE_FINAL_FOR_REVIEW"),
            notification_webhook_url=os.getenv("TASKFLOW_NOTIFICATION_WEBHOOK_URL") or None,
            host=os.getenv("TASKFLOW_HOST", "0.0.0.0"),
            port=int(os.getenv("TASKFLOW_PORT", "8000")),
        )

    def state_file(self, name: str) -> Optional[Path]:
        """Path of a named state file, or None when running in memory."""
        if self.state_dir is None:
            return None
        return self.state_dir / name
