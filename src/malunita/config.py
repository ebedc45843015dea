# src/malunita/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- No secrets required at import time.
- Every component also accepts an injected settings object (tests use SimpleNamespace).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

ENV_PREFIX = "MALUNITA"

load_dotenv(override=False)


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _first_env(*names: str, default: str | None = None) -> str | None:
    for n in names:
        v = os.getenv(n)
        if v is not None and v.strip() != "":
            return v
    return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    return [p.strip() for p in raw.replace(",", " ").split() if p.strip()]


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Session ----
    user_id: str
    console_enabled: bool

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    remote_db_path: Path
    queue_db_path: Path

    # ---- Sync ----
    start_online: bool
    queue_max_attempts: int

    # ---- LLM (extraction / idea analysis) ----
    llm_enabled: bool
    openai_api_key: str | None
    openai_base_url: str
    llm_models: list[str]
    llm_connect_timeout: float
    llm_read_timeout: float

    @staticmethod
    def from_env() -> Settings:
        app_name = _env(_k("APP_NAME"), "malunita") or "malunita"
        log_level = _env(_k("LOG_LEVEL"), "INFO")

        user_id = (_env(_k("USER_ID"), "local-user") or "local-user").strip()
        console_enabled = _env_bool(_k("CONSOLE_ENABLED"), True)

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/malunita"))
        remote_db_path = _env_path(_k("REMOTE_DB_PATH"), data_dir / "remote.sqlite3")
        queue_db_path = _env_path(_k("QUEUE_DB_PATH"), data_dir / "offline_queue.sqlite3")

        start_online = _env_bool(_k("START_ONLINE"), True)
        queue_max_attempts = max(1, _env_int(_k("QUEUE_MAX_ATTEMPTS"), 5))

        llm_enabled = _env_bool(_k("LLM_ENABLED"), True)
        openai_api_key = _first_env(_k("OPENAI_API_KEY"), "OPENAI_API_KEY", default=None)
        openai_base_url = _env(_k("OPENAI_BASE_URL"), "https://api.openai.com/v1")
        llm_models = _env_list(_k("LLM_MODELS"), ["gpt-4o-mini", "gpt-4o"])

        connect_timeout = _env_float(_k("LLM_CONNECT_TIMEOUT_SECONDS"), 5.0)
        read_timeout = _env_float(_k("LLM_READ_TIMEOUT_SECONDS"), 25.0)

        return Settings(
            app_name=app_name,
            log_level=log_level,
            user_id=user_id,
            console_enabled=console_enabled,
            data_dir=data_dir,
            remote_db_path=remote_db_path,
            queue_db_path=queue_db_path,
            start_online=start_online,
            queue_max_attempts=queue_max_attempts,
            llm_enabled=llm_enabled,
            openai_api_key=openai_api_key,
            openai_base_url=openai_base_url,
            llm_models=llm_models,
            llm_connect_timeout=connect_timeout,
            llm_read_timeout=read_timeout,
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
