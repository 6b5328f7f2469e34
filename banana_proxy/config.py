from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

load_dotenv()

PACKAGE_DIR = Path(__file__).resolve().parent

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 3001
DEFAULT_MODEL = "google/nano-banana-pro"
DEFAULT_API_BASE_URL = "https://api.replicate.com/v1"
DEFAULT_STRATEGY = "poll"
DEFAULT_DAILY_GENERATION_LIMIT = 50
DEFAULT_QUOTA_RETENTION_DAYS = 2
DEFAULT_POLL_INTERVAL_MS = 1_000
DEFAULT_HTTP_TIMEOUT_MS = 30_000
DEFAULT_GENERATION_TIMEOUT_MS = 180_000
DEFAULT_OUTPUT_FORMAT = "jpg"
DEFAULT_REFERENCE_IMAGE_NAME = "reference.png"
DEFAULT_LOG_LEVEL = "INFO"

STRATEGY_POLL = "poll"
STRATEGY_SDK = "sdk"
STRATEGIES = (STRATEGY_POLL, STRATEGY_SDK)


def parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if not normalized:
        return default
    return normalized not in {"0", "false", "no", "off"}


def parse_positive_int(value: Any, fallback: int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return fallback
    if parsed <= 0:
        return fallback
    return parsed


def get_host() -> str:
    return (os.environ.get("HOST") or DEFAULT_HOST).strip() or DEFAULT_HOST


def get_port() -> int:
    return parse_positive_int(os.environ.get("PORT"), DEFAULT_PORT)


def get_log_level() -> str:
    return (os.environ.get("LOG_LEVEL") or DEFAULT_LOG_LEVEL).strip().upper() or DEFAULT_LOG_LEVEL


def get_replicate_api_token() -> str:
    return (os.environ.get("REPLICATE_API_TOKEN") or "").strip()


def get_replicate_model() -> str:
    return (os.environ.get("REPLICATE_MODEL") or DEFAULT_MODEL).strip() or DEFAULT_MODEL


def get_replicate_api_base_url() -> str:
    raw = (os.environ.get("REPLICATE_API_BASE_URL") or DEFAULT_API_BASE_URL).strip()
    return (raw or DEFAULT_API_BASE_URL).rstrip("/")


def get_generation_strategy() -> str:
    raw = (os.environ.get("GENERATION_STRATEGY") or DEFAULT_STRATEGY).strip().lower()
    if raw in STRATEGIES:
        return raw
    return DEFAULT_STRATEGY


def get_daily_generation_limit() -> int:
    return parse_positive_int(os.environ.get("DAILY_GENERATION_LIMIT"), DEFAULT_DAILY_GENERATION_LIMIT)


def get_quota_retention_days() -> int:
    return parse_positive_int(os.environ.get("QUOTA_RETENTION_DAYS"), DEFAULT_QUOTA_RETENTION_DAYS)


def get_poll_interval_ms() -> int:
    return parse_positive_int(os.environ.get("POLL_INTERVAL_MS"), DEFAULT_POLL_INTERVAL_MS)


def get_http_timeout_ms() -> int:
    return parse_positive_int(os.environ.get("HTTP_TIMEOUT_MS"), DEFAULT_HTTP_TIMEOUT_MS)


def get_generation_timeout_ms() -> int:
    return parse_positive_int(os.environ.get("GENERATION_TIMEOUT_MS"), DEFAULT_GENERATION_TIMEOUT_MS)


def get_output_format() -> str:
    value = (os.environ.get("OUTPUT_FORMAT") or DEFAULT_OUTPUT_FORMAT).strip().lower()
    if value not in {"jpg", "png"}:
        return DEFAULT_OUTPUT_FORMAT
    return value


def get_reference_image_path() -> Path:
    raw = (os.environ.get("REFERENCE_IMAGE_PATH") or "").strip()
    if not raw:
        return PACKAGE_DIR / DEFAULT_REFERENCE_IMAGE_NAME
    path = Path(raw)
    if not path.is_absolute():
        path = PACKAGE_DIR / path
    return path


def get_trust_forwarded_for() -> bool:
    return parse_bool(os.environ.get("TRUST_FORWARDED_FOR"), True)


def get_cors_allow_origins() -> list[str]:
    raw = (os.environ.get("CORS_ALLOW_ORIGINS") or "*").strip()
    origins: list[str] = []
    for token in raw.split(","):
        origin = token.strip()
        if origin and origin not in origins:
            origins.append(origin)
    if not origins:
        return ["*"]
    return origins
