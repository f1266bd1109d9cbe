from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Tuple


FailurePolicy = Literal["fail", "degrade"]

DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"
DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_TELEGRAM_BASE_URL = "https://api.telegram.org"
DEFAULT_MAX_UPLOAD_BYTES = 2 * 1024 * 1024
DEFAULT_DEGRADED_RESPONSE = (
    "AI analysis is temporarily unavailable. Please try again in a few minutes "
    "or contact a local expert if the problem looks urgent."
)


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None else value.strip()


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _getenv_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


def _getenv_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_list(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    items = tuple(item.strip() for item in value.split(",") if item.strip())
    return items or default


def _failure_policy(value: str) -> FailurePolicy:
    policy = value.strip().lower()
    if policy == "degrade":
        return "degrade"
    return "fail"


@dataclass(frozen=True)
class ServiceConfig:
    gemini_api_key: str = ""
    gemini_model: str = DEFAULT_GEMINI_MODEL
    gemini_base_url: str = DEFAULT_GEMINI_BASE_URL
    inference_timeout_s: float = 30.0
    inference_failure_policy: FailurePolicy = "fail"
    degraded_response: str = DEFAULT_DEGRADED_RESPONSE
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""
    telegram_base_url: str = DEFAULT_TELEGRAM_BASE_URL
    notify_timeout_s: float = 10.0
    app_env: str = "development"
    notify_env: str = "production"
    upload_dir: Path = Path("uploads")
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    verify_images: bool = True
    sweep_max_age_s: int = 3600
    cors_origins: Tuple[str, ...] = field(default=("*",))
    port: int = 5000
    log_level: str = "INFO"

    @property
    def notifications_active(self) -> bool:
        return (
            bool(self.telegram_bot_token)
            and bool(self.telegram_chat_id)
            and self.app_env == self.notify_env
        )

    @property
    def max_upload_mb(self) -> float:
        return self.max_upload_bytes / (1024 * 1024)


def load_config() -> ServiceConfig:
    """Build the service config from the process environment.

    Called once at startup; components receive the result, never `os.environ`.
    """

    app_env = _getenv_str("APP_ENV", "") or _getenv_str("NODE_ENV", "") or "development"
    return ServiceConfig(
        gemini_api_key=_getenv_str("GEMINI_API_KEY", ""),
        gemini_model=_getenv_str("GEMINI_MODEL", DEFAULT_GEMINI_MODEL) or DEFAULT_GEMINI_MODEL,
        gemini_base_url=_getenv_str("GEMINI_BASE_URL", DEFAULT_GEMINI_BASE_URL).rstrip("/"),
        inference_timeout_s=_getenv_float("INFERENCE_TIMEOUT_S", 30.0),
        inference_failure_policy=_failure_policy(_getenv_str("INFERENCE_FAILURE_POLICY", "fail")),
        degraded_response=_getenv_str("DEGRADED_RESPONSE", "") or DEFAULT_DEGRADED_RESPONSE,
        telegram_bot_token=_getenv_str("TELEGRAM_BOT_TOKEN", ""),
        telegram_chat_id=_getenv_str("TELEGRAM_CHAT_ID", ""),
        telegram_base_url=_getenv_str("TELEGRAM_BASE_URL", DEFAULT_TELEGRAM_BASE_URL).rstrip("/"),
        notify_timeout_s=_getenv_float("NOTIFY_TIMEOUT_S", 10.0),
        app_env=app_env,
        notify_env=_getenv_str("NOTIFY_ENV", "production") or "production",
        upload_dir=Path(_getenv_str("UPLOAD_DIR", "uploads") or "uploads"),
        max_upload_bytes=_getenv_int("MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES),
        verify_images=_getenv_bool("VERIFY_IMAGES", True),
        sweep_max_age_s=_getenv_int("UPLOAD_SWEEP_MAX_AGE_S", 3600),
        cors_origins=_getenv_list("CORS_ORIGINS", ("*",)),
        port=_getenv_int("PORT", 5000),
        log_level=_getenv_str("LOG_LEVEL", "INFO").upper() or "INFO",
    )
