"""
Repository pattern for data access.

Handles persistence of quota events and audit entries. Both tables are
append-only ledgers: rows are inserted and read, never updated or deleted.
"""

import json
from datetime import datetime
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import AuditAction, AuditLogEntry, AuditResult, QuotaEvent, QuotaMetric


class ClaimGuardRepository:
    """Repository for reading persisted quota and audit data.

    Thin object wrapper over the module-level functions, so callers can
    carry one database path around instead of passing it to every call.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def recent_quota_events(
        self,
        window_seconds: float,
        now: float,
        model: Optional[str] = None
    ) -> List[QuotaEvent]:
        """Get quota events younger than the trailing window.

        Args:
            window_seconds: Length of the trailing window
            now: Reference time in epoch seconds
            model: Optional filter for specific model

        Returns:
            List of quota events ordered by timestamp (oldest first)
        """
        return fetch_quota_events(
            since=now - window_seconds,
            model=model,
            db_path=self.db_path
        )

    def audit_entries(
        self,
        action: Optional[AuditAction] = None,
        result: Optional[AuditResult] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        limit: int = 100
    ) -> List[AuditLogEntry]:
        """Get audit entries with optional filtering (newest first)."""
        return fetch_audit_entries(
            action=action,
            result=result,
            from_date=from_date,
            to_date=to_date,
            limit=limit,
            db_path=self.db_path
        )


# Global repository instance
_default_repository: Optional[ClaimGuardRepository] = None


def get_repository(db_path: str = DEFAULT_DB_PATH) -> ClaimGuardRepository:
    """Get a repository instance.

    This function provides a singleton instance of the ClaimGuardRepository.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of ClaimGuardRepository
    """
    global _default_repository
    if _default_repository is None or _default_repository.db_path != db_path:
        _default_repository = ClaimGuardRepository(db_path)
    return _default_repository


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the quota_event and audit_log tables if they don't exist.

    No UPDATE or DELETE operations should ever be performed on these tables.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS quota_event (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp REAL NOT NULL,
                model TEXT NOT NULL,
                metric TEXT NOT NULL,
                amount INTEGER NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_quota_event_timestamp
            ON quota_event (timestamp)
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                action TEXT NOT NULL,
                result TEXT NOT NULL,
                file_hashes TEXT NOT NULL,
                security_flags TEXT NOT NULL,
                token_usage INTEGER,
                model_used TEXT
            )
        """)
        conn.commit()
    finally:
        conn.close()


def insert_quota_event(event: QuotaEvent, db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert a single quota event into the append-only ledger.

    Args:
        event: The quota event to record
        db_path: Path to SQLite database file
    """
    insert_quota_events([event], db_path)


def insert_quota_events(events: List[QuotaEvent], db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert multiple quota events atomically.

    All events are inserted in a single transaction to ensure consistency.

    Args:
        events: List of quota events to record
        db_path: Path to SQLite database file
    """
    if not events:
        return

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN TRANSACTION")
        for event in events:
            conn.execute("""
                INSERT INTO quota_event (timestamp, model, metric, amount)
                VALUES (?, ?, ?, ?)
            """, (
                event.timestamp,
                event.model,
                event.metric.value,
                event.amount
            ))
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def fetch_quota_events(
    since: Optional[float] = None,
    model: Optional[str] = None,
    db_path: str = DEFAULT_DB_PATH
) -> List[QuotaEvent]:
    """Fetch quota events, optionally newer than ``since`` and for one model.

    Args:
        since: Exclusive lower bound on timestamps (epoch seconds)
        model: Optional filter for specific model
        db_path: Path to SQLite database file

    Returns:
        List of quota events ordered by timestamp (oldest first)
    """
    conn = get_connection(db_path)
    try:
        query = "SELECT timestamp, model, metric, amount FROM quota_event"
        params = []
        conditions = []

        if since is not None:
            conditions.append("timestamp > ?")
            params.append(since)
        if model:
            conditions.append("model = ?")
            params.append(model)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY timestamp ASC, id ASC"

        cursor = conn.execute(query, params)
        return [
            QuotaEvent(
                timestamp=row[0],
                model=row[1],
                metric=QuotaMetric(row[2]),
                amount=row[3]
            )
            for row in cursor.fetchall()
        ]
    finally:
        conn.close()


def insert_audit_entry(entry: AuditLogEntry, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append a single audit entry.

    Args:
        entry: The audit entry to record
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO audit_log
            (timestamp, action, result, file_hashes, security_flags,
             token_usage, model_used)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            entry.timestamp.isoformat(),
            entry.action.value,
            entry.result.value,
            json.dumps(list(entry.file_hashes)),
            json.dumps(list(entry.security_flags)),
            entry.token_usage,
            entry.model_used
        ))
        conn.commit()
    finally:
        conn.close()


def fetch_audit_entries(
    action: Optional[AuditAction] = None,
    result: Optional[AuditResult] = None,
    from_date: Optional[datetime] = None,
    to_date: Optional[datetime] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH
) -> List[AuditLogEntry]:
    """Fetch audit entries, newest first.

    Args:
        action: Optional filter on the audited action
        result: Optional filter on the recorded result
        from_date: Optional inclusive lower bound on the entry timestamp
        to_date: Optional inclusive upper bound on the entry timestamp
        limit: Maximum number of entries to return
        db_path: Path to SQLite database file

    Returns:
        List of audit entries ordered by timestamp (newest first)
    """
    conn = get_connection(db_path)
    try:
        query = """
            SELECT timestamp, action, result, file_hashes, security_flags,
                   token_usage, model_used
            FROM audit_log
        """
        params = []
        conditions = []

        if action is not None:
            conditions.append("action = ?")
            params.append(action.value)
        if result is not None:
            conditions.append("result = ?")
            params.append(result.value)
        if from_date is not None:
            conditions.append("timestamp >= ?")
            params.append(from_date.isoformat())
        if to_date is not None:
            conditions.append("timestamp <= ?")
            params.append(to_date.isoformat())

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        cursor = conn.execute(query, params)
        return [
            AuditLogEntry(
                timestamp=datetime.fromisoformat(row[0]),
                action=AuditAction(row[1]),
                result=AuditResult(row[2]),
                file_hashes=tuple(json.loads(row[3])),
                security_flags=tuple(json.loads(row[4])),
                token_usage=row[5],
                model_used=row[6]
            )
            for row in cursor.fetchall()
        ]
    finally:
        conn.close()


class SqliteQuotaSink:
    """Quota recording sink that appends every ledger event to SQLite."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        initialize_schema(db_path)

    def __call__(self, event: QuotaEvent) -> None:
        insert_quota_event(event, self.db_path)
