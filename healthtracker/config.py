"""Application settings resolved from the environment.

Values may also come from a ``.env`` file in the working directory, which is
loaded by :func:`load_environment` before settings are first resolved.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from platformdirs import user_data_dir

APP_NAME = "HealthTracker"

DEFAULT_EVENT_LOG_CAPACITY = 100
DEFAULT_MAX_RESOLUTION_ROUNDS = 3
DEFAULT_SOS_COUNTDOWN_SECONDS = 5
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"


def env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in {"1", "true", "yes"}


def env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer; got {raw!r}") from exc


@dataclass(frozen=True)
class SmtpSettings:
    """Connection details for outbound email."""

    host: Optional[str]
    port: int
    username: Optional[str]
    password: Optional[str]
    use_ssl: bool = False
    starttls: bool = True
    sender: Optional[str] = None
    timeout: float = 20.0

    @property
    def configured(self) -> bool:
        return bool(self.host and self.username and self.password)

    @property
    def from_address(self) -> Optional[str]:
        return self.sender or self.username


@dataclass(frozen=True)
class AppSettings:
    smtp: SmtpSettings
    emergency_recipient: Optional[str]
    openai_model: str
    event_log_capacity: int
    max_resolution_rounds: int
    sos_countdown_seconds: int
    offline_queue_path: Path
    log_level: str


def load_environment(path: Optional[str] = None) -> bool:
    """Load variables from a ``.env`` file without overriding the process environment."""

    return load_dotenv(path, override=False)


def _default_queue_path() -> Path:
    data_dir = Path(user_data_dir(APP_NAME, APP_NAME))
    return data_dir / "pending_visit_updates.json"


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """Return the active :class:`AppSettings`."""

    port = env_int("SMTP_PORT", 587)
    use_ssl = env_flag("SMTP_USE_SSL", default=port == 465)
    smtp = SmtpSettings(
        host=os.getenv("SMTP_HOST") or None,
        port=port,
        username=os.getenv("SMTP_USER") or None,
        password=os.getenv("SMTP_PASSWORD") or None,
        use_ssl=use_ssl,
        starttls=env_flag("SMTP_STARTTLS", default=not use_ssl),
        sender=os.getenv("SMTP_FROM") or None,
        timeout=float(env_int("SMTP_TIMEOUT", 20)),
    )
    queue_path = os.getenv("HEALTHTRACKER_QUEUE_PATH")
    return AppSettings(
        smtp=smtp,
        emergency_recipient=os.getenv("EMERGENCY_EMAIL_TO") or None,
        openai_model=os.getenv("OPENAI_MODEL", DEFAULT_OPENAI_MODEL),
        event_log_capacity=max(1, env_int("CONCURRENCY_EVENT_CAPACITY", DEFAULT_EVENT_LOG_CAPACITY)),
        max_resolution_rounds=max(1, env_int("MAX_RESOLUTION_ROUNDS", DEFAULT_MAX_RESOLUTION_ROUNDS)),
        sos_countdown_seconds=max(0, env_int("SOS_COUNTDOWN_SECONDS", DEFAULT_SOS_COUNTDOWN_SECONDS)),
        offline_queue_path=Path(queue_path).expanduser() if queue_path else _default_queue_path(),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


__all__ = [
    "APP_NAME",
    "AppSettings",
    "SmtpSettings",
    "env_flag",
    "env_int",
    "get_settings",
    "load_environment",
]
