"""
Configuration management and loading.

Handles model tiers, validation thresholds, storage paths and
environment variable overrides.
"""

import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml

from claim_guard.core.audit import AuditLogger, JsonlAuditSink, LoggingAuditSink, SqliteAuditSink
from claim_guard.core.quota import DEFAULT_WINDOW_SECONDS, QuotaLedger
from claim_guard.core.tiers import DEFAULT_MODEL_LIMITS, DEFAULT_MODEL_TIERS, ModelLimits, ModelTiers
from claim_guard.core.validation import ValidationThresholds
from claim_guard.storage.db import DEFAULT_DB_PATH
from claim_guard.storage.repository import SqliteQuotaSink, get_repository

logger = logging.getLogger(__name__)

ENV_FORCED_MODEL = "FORCE_GEMINI_MODEL"
ENV_DB_PATH = "CLAIM_GUARD_DB_PATH"
ENV_AUDIT_LOG = "CLAIM_GUARD_AUDIT_LOG"
ENV_CONFIG_PATH = "CLAIM_GUARD_CONFIG"

DEFAULT_MAX_RETRY_AFTER = 60

_shared_ledgers: Dict[Tuple[Any, ...], QuotaLedger] = {}
_ledger_lock = threading.Lock()


@dataclass(frozen=True)
class Settings:
    """Complete runtime configuration."""
    tiers: ModelTiers = DEFAULT_MODEL_TIERS
    window_seconds: float = DEFAULT_WINDOW_SECONDS
    max_retry_after: int = DEFAULT_MAX_RETRY_AFTER
    forced_model: Optional[str] = None
    thresholds: ValidationThresholds = field(default_factory=ValidationThresholds)
    db_path: Optional[str] = DEFAULT_DB_PATH
    audit_log_path: Optional[str] = None

    def __post_init__(self):
        """Validate scalar settings."""
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        if self.max_retry_after <= 0:
            raise ValueError("max_retry_after must be > 0")

    def build_ledger(self, clock: Optional[Callable[[], float]] = None) -> QuotaLedger:
        """Create a quota ledger, persisting to and warm-started from SQLite.

        Events since the earlier of the window start and UTC midnight are
        reloaded so both the per-minute and per-day budgets survive a
        restart. Without a ``db_path`` the ledger is memory-only.
        """
        if not self.db_path:
            return QuotaLedger.from_tiers(self.tiers, self.window_seconds, clock=clock)

        ledger = QuotaLedger.from_tiers(
            self.tiers,
            self.window_seconds,
            clock=clock,
            sink=SqliteQuotaSink(self.db_path),
        )
        now = ledger.now()
        day_start = datetime.fromtimestamp(now, tz=timezone.utc).replace(
            hour=0, minute=0, second=0, microsecond=0
        )
        since = min(now - self.window_seconds, day_start.timestamp())
        events = get_repository(self.db_path).recent_quota_events(now - since, now)
        loaded = ledger.load_events(events)
        logger.info("Warm-started quota ledger with %d event(s) from %s", loaded, self.db_path)
        return ledger

    def build_audit_logger(self) -> AuditLogger:
        """Audit logger writing to the console plus any configured stores."""
        sinks = [LoggingAuditSink()]
        if self.db_path:
            sinks.append(SqliteAuditSink(self.db_path))
        if self.audit_log_path:
            sinks.append(JsonlAuditSink(self.audit_log_path))
        return AuditLogger(sinks)


def get_ledger(settings: Settings) -> QuotaLedger:
    """Get the process-wide ledger for these settings, building it on first use.

    Settings with the same limits, window and database share one ledger,
    so every client built from them draws on the same budgets.

    Args:
        settings: Runtime settings

    Returns:
        The shared QuotaLedger
    """
    key = (
        settings.db_path,
        settings.window_seconds,
        tuple(sorted(settings.tiers.limits.items())),
    )
    with _ledger_lock:
        ledger = _shared_ledgers.get(key)
        if ledger is None:
            ledger = settings.build_ledger()
            _shared_ledgers[key] = ledger
        return ledger


def load_settings(path: Optional[str] = None) -> Settings:
    """Load settings from YAML (if any) and apply environment overrides.

    Args:
        path: Config file path; falls back to ``CLAIM_GUARD_CONFIG`` and
            then to built-in defaults

    Returns:
        Validated Settings

    Raises:
        FileNotFoundError: If an explicit config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    path = path or os.environ.get(ENV_CONFIG_PATH)
    values: Dict[str, Any] = {}
    if path:
        values = _parse_config_file(path)

    forced = os.environ.get(ENV_FORCED_MODEL)
    if forced:
        values["forced_model"] = forced
    db_path = os.environ.get(ENV_DB_PATH)
    if db_path:
        values["db_path"] = db_path
    audit_log = os.environ.get(ENV_AUDIT_LOG)
    if audit_log:
        values["audit_log_path"] = audit_log

    return Settings(**values)


def _parse_config_file(path: str) -> Dict[str, Any]:
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    _reject_unknown(raw_config, {'models', 'validation', 'storage'}, "configuration")

    values: Dict[str, Any] = {}
    if 'models' in raw_config:
        values.update(_parse_models(_section(raw_config, 'models')))
    if 'validation' in raw_config:
        values['thresholds'] = _parse_thresholds(_section(raw_config, 'validation'))
    if 'storage' in raw_config:
        values.update(_parse_storage(_section(raw_config, 'storage')))
    return values


def _section(raw_config: Dict, name: str) -> Dict:
    data = raw_config[name]
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    return data


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _parse_models(data: Dict) -> Dict[str, Any]:
    """Parse the models section into tiers and retry settings."""
    _reject_unknown(
        data,
        {'primary', 'overflow', 'limits', 'window_seconds', 'max_retry_after', 'forced_model'},
        "models",
    )
    values: Dict[str, Any] = {}

    limits = dict(DEFAULT_MODEL_LIMITS)
    raw_limits = data.get('limits') or {}
    if not isinstance(raw_limits, dict):
        raise ValueError("'models.limits' must be a dictionary")
    for model, limit_data in raw_limits.items():
        limits[str(model)] = _parse_limits(limit_data, f"models.limits.{model}")

    primary = data.get('primary', DEFAULT_MODEL_TIERS.primary)
    if not isinstance(primary, str) or not primary:
        raise ValueError("'models.primary' must be a non-empty string")

    overflow = data.get('overflow', list(DEFAULT_MODEL_TIERS.overflow))
    if not isinstance(overflow, list) or not all(isinstance(m, str) for m in overflow):
        raise ValueError("'models.overflow' must be a list of model names")

    values['tiers'] = ModelTiers(
        primary=primary,
        overflow=tuple(overflow),
        limits=limits,
    )

    if 'window_seconds' in data:
        values['window_seconds'] = _positive_number(data['window_seconds'], "models.window_seconds")
    if 'max_retry_after' in data:
        values['max_retry_after'] = int(
            _positive_number(data['max_retry_after'], "models.max_retry_after")
        )
    forced = data.get('forced_model')
    if forced is not None:
        if not isinstance(forced, str):
            raise ValueError("'models.forced_model' must be a string")
        values['forced_model'] = forced or None
    return values


def _parse_limits(data: Any, path: str) -> ModelLimits:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    _reject_unknown(data, {'rpm', 'tpm', 'rpd'}, path)
    for key in ('rpm', 'tpm', 'rpd'):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")
        if not isinstance(data[key], int) or isinstance(data[key], bool):
            raise ValueError(f"'{key}' in {path} must be an integer")
    return ModelLimits(rpm=data['rpm'], tpm=data['tpm'], rpd=data['rpd'])


def _parse_thresholds(data: Dict) -> ValidationThresholds:
    numeric_keys = {
        'low_confidence',
        'verification_confidence',
        'min_identity_fields',
        'high_risk_repair_cost',
        'inconsistent_cost_floor',
        'high_confidence_denial',
    }
    list_keys = {'placeholder_patterns', 'allowed_damage_types'}
    _reject_unknown(data, numeric_keys | list_keys, "validation")

    kwargs: Dict[str, Any] = {}
    for key in numeric_keys & set(data):
        value = data[key]
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            raise ValueError(f"'validation.{key}' must be a number")
        kwargs[key] = int(value) if key == 'min_identity_fields' else float(value)
    for key in list_keys & set(data):
        kwargs[key] = _string_tuple(data[key], f"validation.{key}")
    return ValidationThresholds(**kwargs)


def _parse_storage(data: Dict) -> Dict[str, Any]:
    _reject_unknown(data, {'db_path', 'audit_log_path'}, "storage")
    values: Dict[str, Any] = {}
    for key in ('db_path', 'audit_log_path'):
        if key not in data:
            continue
        value = data[key]
        if value is not None and not isinstance(value, str):
            raise ValueError(f"'storage.{key}' must be a string or null")
        values[key] = value or None
    return values


def _positive_number(value: Any, path: str) -> float:
    if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
        raise ValueError(f"'{path}' must be > 0")
    return float(value)


def _string_tuple(value: Any, path: str) -> Tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"'{path}' must be a list of strings")
    items: List[str] = list(value)
    return tuple(items)
