"""
Append-only audit trail for analysis invocations.

Files are identified by SHA-256 content hash; the raw bytes are never
stored. Recording must never break the analysis flow, so every sink
failure is logged and swallowed.
"""

import hashlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

from claim_guard.storage.db import DEFAULT_DB_PATH
from claim_guard.storage.models import AuditAction, AuditLogEntry, AuditResult
from claim_guard.storage.repository import initialize_schema, insert_audit_entry

logger = logging.getLogger(__name__)

AuditSink = Callable[[AuditLogEntry], None]

FLAG_ANALYSIS_FAILED = "analysis_failed"
FLAG_MANUAL_REVIEW = "manual_review_required"
FLAG_RATE_LIMITED = "rate_limited"


def hash_content(content: Union[bytes, str]) -> str:
    """SHA-256 hex digest of ``content`` (str is UTF-8 encoded)."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def hash_many(contents: Iterable[Union[bytes, str]]) -> List[str]:
    return [hash_content(content) for content in contents]


def build_audit_entry(
    action: AuditAction,
    contents: Iterable[Union[bytes, str]],
    result: AuditResult,
    security_flags: Iterable[str] = (),
    token_usage: Optional[int] = None,
    model_used: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> AuditLogEntry:
    """Build an entry for one invocation, hashing the analyzed files."""
    return AuditLogEntry(
        timestamp=timestamp or datetime.now(timezone.utc),
        action=action,
        result=result,
        file_hashes=tuple(hash_many(contents)),
        security_flags=tuple(security_flags),
        token_usage=token_usage,
        model_used=model_used,
    )


class LoggingAuditSink:
    """Writes entries to the ``claim_guard.audit`` logger."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logging.getLogger("claim_guard.audit")

    def __call__(self, entry: AuditLogEntry) -> None:
        self.log.info("AUDIT %s", json.dumps(entry.to_dict(), sort_keys=True))


class JsonlAuditSink:
    """Appends one JSON object per line to a file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def __call__(self, entry: AuditLogEntry) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry.to_dict(), sort_keys=True) + "\n")


class SqliteAuditSink:
    """Appends entries to the audit_log table."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        initialize_schema(db_path)

    def __call__(self, entry: AuditLogEntry) -> None:
        insert_audit_entry(entry, self.db_path)


class AuditLogger:
    """Fans entries out to every configured sink."""

    def __init__(self, sinks: Optional[Iterable[AuditSink]] = None):
        self.sinks: List[AuditSink] = list(sinks) if sinks is not None else [LoggingAuditSink()]

    def record(self, entry: AuditLogEntry) -> bool:
        """Send ``entry`` to every sink.

        Never raises. A failing sink does not stop the others.

        Returns:
            True if every sink accepted the entry
        """
        ok = True
        for sink in self.sinks:
            try:
                sink(entry)
            except Exception:
                ok = False
                logger.exception(
                    "Audit sink %s failed for %s entry",
                    type(sink).__name__,
                    entry.action.value,
                )
        return ok
