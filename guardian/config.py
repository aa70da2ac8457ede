"""Configuration loading for the synthetic transaction monitor."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional, Union
from urllib.parse import urlsplit

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from guardian.errors import ConfigurationError
from guardian.models import (
    DEFAULT_CHECK_INTERVAL_SECONDS,
    DEFAULT_DOWN_AFTER_FAILURES,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETENTION_DAYS,
    DEFAULT_RETRY_DELAY_SECONDS,
    DEFAULT_TIMEOUT_SECONDS,
    SyntheticTransaction,
    TransactionType,
)
from guardian.stepflow import validate_form_steps, validate_navigation_steps


logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = "config/guardian.yaml"

_CORE_FIELDS = {"id", "type", "target", "check_interval", "timeout", "max_retries", "retry_delay", "enabled"}


class MonitoringDefaults(BaseModel):
    """Application-wide monitoring defaults."""

    # None means "not configured": the schema default (300s) applies.
    default_check_interval: Optional[int] = Field(default=None, gt=0, description="Fallback check interval in seconds")
    default_timeout: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0, description="Per-attempt timeout in seconds")
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0, le=20, description="Retries after the first attempt")
    retry_delay: float = Field(default=DEFAULT_RETRY_DELAY_SECONDS, ge=0, description="Seconds between attempts")
    metric_retention_days: int = Field(default=DEFAULT_RETENTION_DAYS, ge=1, description="Days to keep check results")
    prune_interval_seconds: int = Field(default=3600, ge=1, description="How often retention pruning runs")
    down_after_failures: int = Field(default=DEFAULT_DOWN_AFTER_FAILURES, ge=1, description="Failures before down")
    shutdown_grace_seconds: float = Field(default=30.0, ge=0, description="Grace period for in-flight probes")
    store_write_retries: int = Field(default=3, ge=0, description="Retries for a failed result append")
    store_write_backoff_seconds: float = Field(default=0.5, ge=0, description="Initial append retry backoff")
    browser_concurrency: int = Field(default=3, ge=1, description="Concurrent browser probes")


class TransactionDefinition(BaseModel):
    """One synthetic transaction as written in config or stored in the database."""

    # Unknown keys are type specific probe options (expected_status_codes, steps, ...).
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1, max_length=200)
    type: TransactionType
    target: str = Field(..., min_length=1, max_length=2000)
    check_interval: Optional[int] = Field(default=None, gt=0)
    timeout: Optional[float] = Field(default=None, gt=0)
    max_retries: Optional[int] = Field(default=None, ge=0, le=20)
    retry_delay: Optional[float] = Field(default=None, ge=0)
    enabled: bool = True


class GuardianConfig(BaseModel):
    """Top level configuration file."""

    db_path: str = Field(default="data/guardian.db", description="sqlite result store path")
    monitoring: MonitoringDefaults = Field(default_factory=MonitoringDefaults)
    # Kept raw so one malformed transaction does not reject the whole file.
    transactions: list[dict[str, Any]] = Field(default_factory=list)


def resolve_check_interval(value: Any, defaults: MonitoringDefaults) -> int:
    """
    Precedence: per-transaction value, then monitoring.default_check_interval, then the schema default.
    """
    if value is not None:
        return int(value)
    if defaults.default_check_interval is not None:
        return int(defaults.default_check_interval)
    return DEFAULT_CHECK_INTERVAL_SECONDS


def _ensure_http_url(url: str, *, transaction_id: str) -> None:
    parts = urlsplit(str(url or "").strip())
    if (parts.scheme or "").lower() not in {"http", "https"}:
        raise ConfigurationError("invalid_target_scheme", transaction_id=transaction_id)
    if not parts.netloc:
        raise ConfigurationError("invalid_target_host", transaction_id=transaction_id)


_HTTP_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"}


class _ApiOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    method: str = "GET"
    headers: dict[str, Union[str, int, float]] = Field(default_factory=dict)
    body_json: Optional[Union[dict[str, Any], list[Any]]] = None
    body_text: Optional[str] = None
    expected_status_codes: list[int] = Field(default_factory=lambda: [200], min_length=1)
    expected_content_type_contains: Optional[str] = None
    json_paths_required: list[str] = Field(default_factory=list)
    json_paths_equal: dict[str, Any] = Field(default_factory=dict)
    max_elapsed_ms: Optional[float] = Field(default=None, gt=0)

    @field_validator("expected_status_codes", mode="before")
    @classmethod
    def wrap_single_status(cls, value: Any) -> Any:
        return value if isinstance(value, list) else [value]

    @field_validator("method")
    @classmethod
    def known_method(cls, value: str) -> str:
        method = value.strip().upper()
        if method not in _HTTP_METHODS:
            raise ValueError(f"unsupported method {value!r}")
        return method

    @model_validator(mode="after")
    def single_body(self) -> "_ApiOptions":
        if self.body_json is not None and self.body_text is not None:
            raise ValueError("body_json and body_text are mutually exclusive")
        return self


class _ContentOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    expected_status_codes: list[int] = Field(default_factory=lambda: [200], min_length=1)
    required_text: list[str] = Field(default_factory=list)
    # None keeps the built-in maintenance/outage markers.
    forbidden_text: Optional[list[str]] = None

    @field_validator("expected_status_codes", mode="before")
    @classmethod
    def wrap_single_status(cls, value: Any) -> Any:
        return value if isinstance(value, list) else [value]


class _BrowserOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    steps: Any = None


_OPTION_MODELS: dict[TransactionType, type[BaseModel]] = {
    TransactionType.API: _ApiOptions,
    TransactionType.CONTENT: _ContentOptions,
    TransactionType.FORM: _BrowserOptions,
    TransactionType.NAVIGATION: _BrowserOptions,
}


def _describe_validation_error(exc: ValidationError) -> str:
    return "; ".join(f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in exc.errors())


def _validate_options(tx_type: TransactionType, options: dict[str, Any], *, transaction_id: str) -> dict[str, Any]:
    try:
        parsed = _OPTION_MODELS[tx_type](**options)
    except ValidationError as exc:
        raise ConfigurationError(
            f"invalid_{tx_type.value}_options: {_describe_validation_error(exc)}", transaction_id=transaction_id
        ) from exc

    out = parsed.model_dump(exclude_unset=True)
    if tx_type == TransactionType.FORM:
        out["steps"] = validate_form_steps(options.get("steps"), transaction_id=transaction_id)
    elif tx_type == TransactionType.NAVIGATION:
        out["steps"] = validate_navigation_steps(options.get("steps"), transaction_id=transaction_id)
    return out


def build_transaction(raw: Any, defaults: MonitoringDefaults) -> SyntheticTransaction:
    """
    Validate one raw definition and apply defaults. Raises ConfigurationError.
    """
    if not isinstance(raw, dict):
        raise ConfigurationError(f"transaction_must_be_mapping: {type(raw).__name__}")
    tx_id = str(raw.get("id") or "").strip() or None
    try:
        defn = TransactionDefinition(**raw)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid_definition: {_describe_validation_error(exc)}", transaction_id=tx_id) from exc

    tx_id = defn.id.strip()
    target = defn.target.strip()
    _ensure_http_url(target, transaction_id=tx_id)

    extra = {k: v for k, v in (defn.model_extra or {}).items() if k not in _CORE_FIELDS}
    options = _validate_options(defn.type, extra, transaction_id=tx_id)

    return SyntheticTransaction(
        id=tx_id,
        type=defn.type,
        target=target,
        check_interval=resolve_check_interval(defn.check_interval, defaults),
        timeout=float(defn.timeout if defn.timeout is not None else defaults.default_timeout),
        max_retries=int(defn.max_retries if defn.max_retries is not None else defaults.max_retries),
        retry_delay=float(defn.retry_delay if defn.retry_delay is not None else defaults.retry_delay),
        options=options,
        enabled=bool(defn.enabled),
    )


def load_transactions(
    raw_items: list[Any], defaults: MonitoringDefaults
) -> tuple[list[SyntheticTransaction], list[ConfigurationError]]:
    """
    Build every definition. Malformed ones are excluded and returned as errors; the rest stay usable.
    """
    valid: list[SyntheticTransaction] = []
    errors: list[ConfigurationError] = []
    seen: set[str] = set()
    for idx, raw in enumerate(raw_items or []):
        try:
            tx = build_transaction(raw, defaults)
        except ConfigurationError as exc:
            if exc.transaction_id is None:
                exc.transaction_id = f"transactions[{idx}]"
            logger.error("Excluding malformed transaction", transaction_id=exc.transaction_id, error=str(exc))
            errors.append(exc)
            continue
        if tx.id in seen:
            exc = ConfigurationError("duplicate_transaction_id", transaction_id=tx.id)
            logger.error("Excluding duplicate transaction", transaction_id=tx.id)
            errors.append(exc)
            continue
        seen.add(tx.id)
        valid.append(tx)
    return valid, errors


def load_config(config_path: Optional[str] = None) -> GuardianConfig:
    """Load configuration from a YAML file plus environment overrides."""
    if config_path is None:
        config_path = os.getenv("GUARDIAN_CONFIG", DEFAULT_CONFIG_PATH)

    config_data: dict[str, Any] = {}
    path = Path(config_path)
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}
        if not isinstance(config_data, dict):
            raise ConfigurationError("Config YAML must be a mapping")
    else:
        logger.warning("Config file not found; using defaults", config_path=str(config_path))

    db_path = os.getenv("GUARDIAN_DB_PATH")
    if db_path:
        config_data["db_path"] = db_path

    try:
        return GuardianConfig(**config_data)
    except ValidationError as exc:
        raise ConfigurationError(f"invalid_config: {exc}") from exc
