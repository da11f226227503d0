"""Environment-driven settings for the market data service."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


logger = logging.getLogger(__name__)

DEFAULT_AI_ORIGINS = "http://localhost:3000"


def parse_float(raw_value: str | None, default: float, minimum: float = 0.0) -> float:
    if raw_value is None or not raw_value.strip():
        return default
    try:
        parsed = float(raw_value)
    except ValueError:
        logger.warning("Invalid number %r, using %s", raw_value, default)
        parsed = default
    return max(parsed, minimum)


def parse_int(raw_value: str | None, default: int, minimum: int = 0) -> int:
    if raw_value is None or not raw_value.strip():
        return default
    try:
        parsed = int(raw_value)
    except ValueError:
        logger.warning("Invalid integer %r, using %s", raw_value, default)
        parsed = default
    return max(parsed, minimum)


def parse_bool(raw_value: str | None, default: bool) -> bool:
    if raw_value is None or not raw_value.strip():
        return default
    return raw_value.strip().lower() in ("1", "true", "yes", "on")


def parse_origins(raw_value: str | None, default: str = "*") -> List[str]:
    value = default if raw_value is None else raw_value
    return [origin.strip() for origin in value.split(",") if origin.strip()]


def parse_timezone(raw_value: str | None, default: str = "America/New_York") -> ZoneInfo:
    name = (raw_value or default).strip()
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown time zone %r, using %s", name, default)
        return ZoneInfo(default)


@dataclass(frozen=True)
class Settings:
    redis_url: str | None = None
    redis_password: str | None = None
    alpha_vantage_api_key: str | None = None
    alpha_vantage_call_budget: int = 5
    alpha_vantage_call_delay: float = 0.25
    cors_allow_origins: List[str] = field(default_factory=lambda: ["*"])
    ai_allowed_origins: List[str] = field(default_factory=lambda: [DEFAULT_AI_ORIGINS])
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4"
    scheduler_tick_seconds: float = 60.0
    rate_limit_max_requests: int = 20
    rate_limit_window_seconds: int = 60
    rate_limit_fail_open: bool = True
    market_timezone: ZoneInfo = field(default_factory=lambda: ZoneInfo("America/New_York"))
    market_open_hour: int = 10
    market_close_hour: int = 15
    log_level: str = "INFO"


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if environ is None else environ
    return Settings(
        redis_url=env.get("REDIS_URL") or None,
        redis_password=env.get("REDIS_PASSWORD") or None,
        alpha_vantage_api_key=env.get("ALPHA_VANTAGE_API_KEY") or None,
        alpha_vantage_call_budget=parse_int(env.get("ALPHA_VANTAGE_CALL_BUDGET"), 5),
        alpha_vantage_call_delay=parse_float(env.get("ALPHA_VANTAGE_CALL_DELAY"), 0.25),
        cors_allow_origins=parse_origins(env.get("CORS_ALLOW_ORIGINS")),
        ai_allowed_origins=parse_origins(env.get("AI_ALLOWED_ORIGINS"), DEFAULT_AI_ORIGINS),
        openai_api_key=env.get("OPENAI_API_KEY") or None,
        openai_base_url=env.get("OPENAI_BASE_URL") or "https://api.openai.com/v1",
        openai_model=env.get("OPENAI_MODEL") or "gpt-4",
        scheduler_tick_seconds=parse_float(env.get("SCHEDULER_TICK_SECONDS"), 60.0, minimum=1.0),
        rate_limit_max_requests=parse_int(env.get("RATE_LIMIT_MAX_REQUESTS"), 20, minimum=1),
        rate_limit_window_seconds=parse_int(env.get("RATE_LIMIT_WINDOW_SECONDS"), 60, minimum=1),
        rate_limit_fail_open=parse_bool(env.get("RATE_LIMIT_FAIL_OPEN"), True),
        market_timezone=parse_timezone(env.get("MARKET_TIMEZONE")),
        market_open_hour=parse_int(env.get("MARKET_OPEN_HOUR"), 10),
        market_close_hour=parse_int(env.get("MARKET_CLOSE_HOUR"), 15),
        log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
    )
