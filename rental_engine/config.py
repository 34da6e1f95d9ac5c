from __future__ import annotations

import os

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict


DEFAULT_MARGIN_DAYS = 2
DEFAULT_DEPOT_LOCATION = "TALLER"
DEFAULT_CORS_ORIGINS = "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001"


class EngineSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    database_url: str
    availability_margin_days: int = DEFAULT_MARGIN_DAYS
    default_depot_location: str = DEFAULT_DEPOT_LOCATION
    allow_concurrent_incidents: bool = False
    cors_allow_origins: list[str] = []


def _require_env(name: str) -> str:
    value = (os.environ.get(name) or "").strip()
    if not value:
        raise RuntimeError(f"Missing required environment variable: {name}")
    return value


def _parse_bool_env(name: str, default: str) -> bool:
    raw = os.environ.get(name, default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def _parse_int_env(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"Environment variable {name} must be an integer, got {raw!r}") from exc


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


def load_settings() -> EngineSettings:
    load_dotenv()
    margin_days = _parse_int_env("AVAILABILITY_MARGIN_DAYS", DEFAULT_MARGIN_DAYS)
    if margin_days < 0:
        raise RuntimeError("AVAILABILITY_MARGIN_DAYS must not be negative.")
    return EngineSettings(
        database_url=_require_env("RENTAL_ENGINE_DB_URL"),
        availability_margin_days=margin_days,
        default_depot_location=(os.environ.get("DEFAULT_DEPOT_LOCATION") or DEFAULT_DEPOT_LOCATION).strip(),
        allow_concurrent_incidents=_parse_bool_env("ALLOW_CONCURRENT_INCIDENTS", "false"),
        cors_allow_origins=_parse_csv_env("CORS_ALLOW_ORIGINS", DEFAULT_CORS_ORIGINS),
    )
