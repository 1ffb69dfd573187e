"""
Data models for storage layer.

Defines the immutable records written to the quota and audit ledgers.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple


class QuotaMetric(Enum):
    """Metrics tracked per model inside a quota window."""
    REQUESTS = "requests"
    TOKENS = "tokens"


class AuditAction(Enum):
    """Analysis operations that produce audit entries."""
    ANALYZE_VIDEO = "analyze_video"
    ANALYZE_IMAGE = "analyze_image"
    ANALYZE_POLICY = "analyze_policy"


class AuditResult(Enum):
    """Outcome recorded for an audited invocation."""
    SUCCESS = "success"
    ERROR = "error"
    FLAGGED = "flagged"


@dataclass(frozen=True)
class QuotaEvent:
    """Single timestamped usage event for one model and metric.

    Timestamps are epoch seconds so they can be compared against the
    ledger clock and stored without timezone conversion.
    """
    timestamp: float
    model: str
    metric: QuotaMetric
    amount: int

    def __post_init__(self):
        """Validate event values."""
        if not self.model:
            raise ValueError("model is required")
        if self.amount < 0:
            raise ValueError("amount cannot be negative")


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable audit record for one analysis invocation.

    Files are referenced only by content hash. Once written, entries
    must never be modified.
    """
    timestamp: datetime
    action: AuditAction
    result: AuditResult
    file_hashes: Tuple[str, ...] = field(default_factory=tuple)
    security_flags: Tuple[str, ...] = field(default_factory=tuple)
    token_usage: Optional[int] = None
    model_used: Optional[str] = None

    def to_dict(self) -> dict:
        """Serialize to a JSON-friendly dictionary."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "action": self.action.value,
            "result": self.result.value,
            "file_hashes": list(self.file_hashes),
            "security_flags": list(self.security_flags),
            "token_usage": self.token_usage,
            "model_used": self.model_used,
        }
