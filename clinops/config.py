"""Runtime configuration resolved from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, FrozenSet, Optional, Tuple

APP_NAME = "clinops"


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: Tuple[str, ...] = ()) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


DEFAULT_CHECK_MODELS: Dict[str, str] = {
    "chronicity-check": "gpt-5",
    "hpi-structure-check": "gpt-5-nano",
    "plan-check": "gpt-5-nano",
    "accuracy-check": "gpt-5-mini",
}


@dataclass(frozen=True)
class RetrySettings:
    """Backoff policy applied to transient analysis failures."""

    base_seconds: float = 30.0
    cap_seconds: float = 600.0
    max_attempts: int = 5


@dataclass(frozen=True)
class Settings:
    """Resolved application settings."""

    login_url: str = "https://login.ezinfra.net/api/login"
    refresh_url: str = "https://login.ezinfra.net/api/refresh"
    api_base_url: str = "https://srvprod.ezinfra.net"
    client_version: str = "4.28.1"
    clinic_timezone: str = "America/Detroit"
    clinic_id: Optional[str] = None
    practice_id: Optional[str] = None
    service_identity: Optional[str] = None
    http_timeout: float = 20.0
    token_ttl_seconds: int = 3600

    page_size: int = 50
    discovery_cap: int = 1000
    note_statuses: FrozenSet[str] = frozenset({"PENDING_COSIGN", "CHECKED_OUT", "WITH_PROVIDER"})
    note_min_age_seconds: int = 2 * 60 * 60
    reuse_window_seconds: int = 6 * 60 * 60
    stagger_seconds: float = 2.0
    eligibility_window_seconds: int = 24 * 60 * 60
    eligibility_recheck_days: int = 7
    provider_level_policy_ids: FrozenSet[str] = frozenset()
    cross_patient_reuse: bool = True
    vitals_statuses: FrozenSet[str] = frozenset({"READY_FOR_STAFF", "WITH_STAFF"})
    vitals_min_age_years: int = 18

    note_discovery_interval: float = 15 * 60
    eligibility_discovery_interval: float = 30 * 60
    task_poll_interval: float = 10 * 60
    vitals_interval: float = 10.0
    note_check_concurrency: int = 3
    eligibility_concurrency: int = 2
    queue_poll_interval: float = 1.0

    openai_api_key: Optional[str] = None
    default_model: str = "gpt-5-nano"
    check_models: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_CHECK_MODELS))
    prompt_dir: Optional[str] = None
    offline_ai: bool = False

    retry: RetrySettings = field(default_factory=RetrySettings)
    metrics_port: Optional[int] = None

    def model_for(self, check_type: str) -> str:
        return self.check_models.get(check_type, self.default_model)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the active settings derived from the environment."""

    models = dict(DEFAULT_CHECK_MODELS)
    for check_type in DEFAULT_CHECK_MODELS:
        env_name = "CLINOPS_MODEL_" + check_type.upper().replace("-", "_")
        override = os.getenv(env_name)
        if override:
            models[check_type] = override

    metrics_port = os.getenv("CLINOPS_METRICS_PORT")

    return Settings(
        login_url=os.getenv("EHR_LOGIN_URL", Settings.login_url),
        refresh_url=os.getenv("EHR_REFRESH_URL", Settings.refresh_url),
        api_base_url=os.getenv("EHR_API_BASE_URL", Settings.api_base_url),
        client_version=os.getenv("EHR_CLIENT_VERSION", Settings.client_version),
        clinic_timezone=os.getenv("EHR_CLINIC_TIMEZONE", Settings.clinic_timezone),
        clinic_id=os.getenv("EHR_CLINIC_ID"),
        practice_id=os.getenv("EHR_PRACTICE_ID"),
        service_identity=os.getenv("CLINOPS_SERVICE_IDENTITY"),
        http_timeout=_env_float("EHR_HTTP_TIMEOUT", Settings.http_timeout),
        token_ttl_seconds=_env_int("CLINOPS_TOKEN_TTL_SECONDS", Settings.token_ttl_seconds),
        page_size=_env_int("CLINOPS_PAGE_SIZE", Settings.page_size),
        discovery_cap=_env_int("CLINOPS_DISCOVERY_CAP", Settings.discovery_cap),
        note_statuses=frozenset(_env_list("CLINOPS_NOTE_STATUSES", tuple(sorted(Settings.note_statuses)))),
        note_min_age_seconds=_env_int("CLINOPS_NOTE_MIN_AGE_SECONDS", Settings.note_min_age_seconds),
        reuse_window_seconds=_env_int("CLINOPS_REUSE_WINDOW_SECONDS", Settings.reuse_window_seconds),
        stagger_seconds=_env_float("CLINOPS_STAGGER_SECONDS", Settings.stagger_seconds),
        eligibility_window_seconds=_env_int(
            "CLINOPS_ELIGIBILITY_WINDOW_SECONDS", Settings.eligibility_window_seconds
        ),
        eligibility_recheck_days=_env_int("CLINOPS_ELIGIBILITY_RECHECK_DAYS", Settings.eligibility_recheck_days),
        provider_level_policy_ids=frozenset(_env_list("CLINOPS_PROVIDER_LEVEL_POLICY_IDS")),
        cross_patient_reuse=_env_bool("CLINOPS_CROSS_PATIENT_REUSE", True),
        vitals_statuses=frozenset(_env_list("CLINOPS_VITALS_STATUSES", tuple(sorted(Settings.vitals_statuses)))),
        vitals_min_age_years=_env_int("CLINOPS_VITALS_MIN_AGE_YEARS", Settings.vitals_min_age_years),
        note_discovery_interval=_env_float("CLINOPS_NOTE_DISCOVERY_INTERVAL", Settings.note_discovery_interval),
        eligibility_discovery_interval=_env_float(
            "CLINOPS_ELIGIBILITY_DISCOVERY_INTERVAL", Settings.eligibility_discovery_interval
        ),
        task_poll_interval=_env_float("CLINOPS_TASK_POLL_INTERVAL", Settings.task_poll_interval),
        vitals_interval=_env_float("CLINOPS_VITALS_INTERVAL", Settings.vitals_interval),
        note_check_concurrency=_env_int("CLINOPS_NOTE_CHECK_CONCURRENCY", Settings.note_check_concurrency),
        eligibility_concurrency=_env_int("CLINOPS_ELIGIBILITY_CONCURRENCY", Settings.eligibility_concurrency),
        queue_poll_interval=_env_float("CLINOPS_QUEUE_POLL_INTERVAL", Settings.queue_poll_interval),
        openai_api_key=os.getenv("OPENAI_API_KEY"),
        default_model=os.getenv("CLINOPS_DEFAULT_MODEL", Settings.default_model),
        check_models=models,
        prompt_dir=os.getenv("CLINOPS_PROMPT_DIR"),
        offline_ai=_env_bool("USE_OFFLINE_MODEL", False),
        retry=RetrySettings(
            base_seconds=_env_float("CLINOPS_RETRY_BASE_SECONDS", RetrySettings.base_seconds),
            cap_seconds=_env_float("CLINOPS_RETRY_CAP_SECONDS", RetrySettings.cap_seconds),
            max_attempts=_env_int("CLINOPS_RETRY_MAX_ATTEMPTS", RetrySettings.max_attempts),
        ),
        metrics_port=int(metrics_port) if metrics_port and metrics_port.isdigit() else None,
    )


__all__ = ["APP_NAME", "DEFAULT_CHECK_MODELS", "RetrySettings", "Settings", "get_settings"]
