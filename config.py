# config.py
import os
from dataclasses import dataclass
from typing import Optional

import streamlit as st
from streamlit.errors import StreamlitAPIException
import structlog


class ConfigError(RuntimeError):
    pass


def _secret(name: str) -> Optional[str]:
    """
    Streamlit secrets first, then the environment.
    st.secrets raises when no secrets.toml exists, so treat that as "not set".
    """
    try:
        val = st.secrets.get(name)
    except (FileNotFoundError, StreamlitAPIException):
        val = None
    if val is None or val == "":
        val = os.getenv(name)
    return val


@dataclass(frozen=True)
class Settings:
    supabase_url: str
    supabase_key: str
    subjects_table: str = "subjects"
    poll_interval: float = 2.0
    http_timeout: float = 20.0
    cookie_password: str = "change_me_please"
    log_level: str = "info"
    log_format: str = "console"


def load_settings() -> Settings:
    url = _secret("SUPABASE_URL")
    key = _secret("SUPABASE_ANON_KEY") or _secret("SUPABASE_KEY")
    if not url or not key:
        raise ConfigError("Supabase URL/key missing. Set SUPABASE_URL and SUPABASE_ANON_KEY.")
    return Settings(
        supabase_url=url.rstrip("/"),
        supabase_key=key,
        subjects_table=_secret("SUBJECTS_TABLE") or "subjects",
        poll_interval=float(_secret("POLL_INTERVAL") or 2.0),
        http_timeout=float(_secret("HTTP_TIMEOUT") or 20),
        cookie_password=_secret("COOKIE_PASSWORD") or "change_me_please",
        log_level=(_secret("LOG_LEVEL") or "info").lower(),
        log_format=(_secret("LOG_FORMAT") or "console").lower(),
    )


# ---------- Logging ----------
def configure_logging(level: str = "info", fmt: str = "console") -> None:
    """Configure structlog with the given level and renderer ("json" or "console")."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.get_level_from_name(level)
        ),
    )
