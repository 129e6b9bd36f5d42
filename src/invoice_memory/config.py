"""Engine configuration with optional environment overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import TypeVar

from dotenv import load_dotenv

from invoice_memory.models import RiskLevel

load_dotenv()

_ENV_PREFIX = "INVOICE_MEMORY_"

_ConfigT = TypeVar("_ConfigT")


@dataclass(frozen=True)
class ApplicationConfig:
    """Memory application settings."""

    min_application_threshold: float = 0.3
    max_memories_per_invoice: int = 20
    max_corrections: int = 10
    default_currency: str = "EUR"
    enable_field_mappings: bool = True
    enable_corrections: bool = True
    enable_conflict_resolution: bool = True
    enable_validation: bool = True


@dataclass(frozen=True)
class ConfidenceConfig:
    """Reinforcement, decay and archival settings."""

    reinforcement_rate: float = 0.1
    decay_rate_per_day: float = 0.01
    minimum_confidence: float = 0.1
    maximum_confidence: float = 0.99
    archive_confidence_floor: float = 0.1
    archive_success_rate_floor: float = 0.2
    archive_min_usage: int = 5


@dataclass(frozen=True)
class DecisionConfig:
    """Decision thresholds."""

    escalation_threshold: float = 0.7
    rejection_threshold: float = 0.3
    risk_tolerance: RiskLevel = RiskLevel.MEDIUM
    high_value_invoice_threshold: float = 10000.0
    high_severity_threshold: float = 0.7


@dataclass(frozen=True)
class LearningConfig:
    """Pattern recognition and memory synthesis settings."""

    min_pattern_occurrences: int = 3
    pattern_base_confidence: float = 0.4
    pattern_confidence_step: float = 0.1
    pattern_confidence_cap: float = 0.9
    min_new_memory_confidence: float = 0.4
    max_memories_per_session: int = 10
    batch_size: int = 10
    history_window: int = 200


@dataclass(frozen=True)
class VendorPatternConfig:
    """Vendor memory learning settings."""

    min_pattern_confidence: float = 0.6
    min_examples_for_pattern: int = 2
    vendor_specific_boost: float = 0.2
    max_history_invoices: int = 50
    enable_vat_detection: bool = True
    enable_currency_learning: bool = True
    enable_date_format_learning: bool = True


@dataclass(frozen=True)
class DuplicateDetectionConfig:
    """Duplicate invoice matching settings."""

    date_proximity_days: int = 7
    enable_fuzzy_matching: bool = True
    fuzzy_match_threshold: float = 0.85
    enable_amount_comparison: bool = True
    amount_tolerance_percent: float = 5.0
    max_candidates: int = 50


@dataclass(frozen=True)
class StoreConfig:
    """Persistence settings.

    Timeouts bound every external call a pipeline stage makes.
    """

    connect_timeout_seconds: int = 5
    statement_timeout_ms: int = 5000
    max_update_retries: int = 3


def get_database_url() -> str:
    """Return the DATABASE_URL from the environment."""
    url = os.environ.get("DATABASE_URL")
    if not url:
        msg = "DATABASE_URL environment variable is required"
        raise ValueError(msg)
    return url


def load_application_config() -> ApplicationConfig:
    """Build ApplicationConfig from INVOICE_MEMORY_* overrides."""
    return _load(ApplicationConfig())


def load_confidence_config() -> ConfidenceConfig:
    """Build ConfidenceConfig from INVOICE_MEMORY_* overrides."""
    return _load(ConfidenceConfig())


def load_decision_config() -> DecisionConfig:
    """Build DecisionConfig from INVOICE_MEMORY_* overrides.

    Example: INVOICE_MEMORY_ESCALATION_THRESHOLD=0.8
    """
    return _load(DecisionConfig())


def load_learning_config() -> LearningConfig:
    """Build LearningConfig from INVOICE_MEMORY_* overrides."""
    return _load(LearningConfig())


def load_vendor_pattern_config() -> VendorPatternConfig:
    """Build VendorPatternConfig from INVOICE_MEMORY_* overrides."""
    return _load(VendorPatternConfig())


def load_duplicate_detection_config() -> DuplicateDetectionConfig:
    """Build DuplicateDetectionConfig from INVOICE_MEMORY_* overrides."""
    return _load(DuplicateDetectionConfig())


def load_store_config() -> StoreConfig:
    """Build StoreConfig from INVOICE_MEMORY_* overrides."""
    return _load(StoreConfig())


def _load(defaults: _ConfigT) -> _ConfigT:
    """Overlay environment values onto a config dataclass.

    Each field maps to INVOICE_MEMORY_<FIELD_NAME>. Values are coerced to
    the type of the default; unparseable values raise ValueError naming
    the variable.
    """
    overrides: dict[str, object] = {}
    for f in fields(defaults):  # type: ignore[arg-type]
        var = f"{_ENV_PREFIX}{f.name.upper()}"
        raw = os.environ.get(var)
        if raw is None or raw == "":
            continue
        current = getattr(defaults, f.name)
        try:
            overrides[f.name] = _coerce(raw, current)
        except ValueError as exc:
            msg = f"Invalid value for {var}: {raw!r}"
            raise ValueError(msg) from exc
    return replace(defaults, **overrides)  # type: ignore[type-var]


def _coerce(raw: str, current: object) -> object:
    if isinstance(current, bool):
        lowered = raw.strip().lower()
        if lowered in ("1", "true", "yes", "on"):
            return True
        if lowered in ("0", "false", "no", "off"):
            return False
        msg = f"not a boolean: {raw}"
        raise ValueError(msg)
    if isinstance(current, RiskLevel):
        return RiskLevel(raw.strip().lower())
    if isinstance(current, int):
        return int(raw)
    if isinstance(current, float):
        return float(raw)
    return raw
