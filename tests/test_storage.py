"""
Unit tests for storage layer.

Tests schema creation, event insertion, and retrieval operations.
"""

import os
import tempfile
from datetime import datetime, timedelta

import pytest

from claim_guard.storage.db import get_connection
from claim_guard.storage.models import (
    AuditAction,
    AuditLogEntry,
    AuditResult,
    QuotaEvent,
    QuotaMetric,
)
from claim_guard.storage.repository import (
    ClaimGuardRepository,
    SqliteQuotaSink,
    fetch_audit_entries,
    fetch_quota_events,
    get_repository,
    initialize_schema,
    insert_audit_entry,
    insert_quota_event,
    insert_quota_events,
)


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify tables are created correctly."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "nested", "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                cursor = conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
                )
                tables = [row[0] for row in cursor.fetchall()]
                assert "quota_event" in tables
                assert "audit_log" in tables

                cursor = conn.execute("PRAGMA table_info(quota_event)")
                column_names = [col[1] for col in cursor.fetchall()]
                assert column_names == ['id', 'timestamp', 'model', 'metric', 'amount']
            finally:
                conn.close()

    def test_schema_is_idempotent(self):
        """Initializing twice is harmless."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            initialize_schema(db_path)


class TestModels:
    """Test record validation."""

    def test_quota_event_rejects_negative(self):
        """Negative amounts are invalid."""
        with pytest.raises(ValueError, match="amount cannot be negative"):
            QuotaEvent(timestamp=1.0, model="m", metric=QuotaMetric.TOKENS, amount=-1)

    def test_quota_event_requires_model(self):
        """Model is required."""
        with pytest.raises(ValueError, match="model is required"):
            QuotaEvent(timestamp=1.0, model="", metric=QuotaMetric.TOKENS, amount=1)


class TestQuotaEvents:
    """Test quota event persistence."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_insert_and_fetch(self):
        """Events newer than the cutoff are returned oldest first."""
        insert_quota_events([
            QuotaEvent(timestamp=200.0, model="a", metric=QuotaMetric.TOKENS, amount=50),
            QuotaEvent(timestamp=100.0, model="a", metric=QuotaMetric.REQUESTS, amount=1),
            QuotaEvent(timestamp=10.0, model="b", metric=QuotaMetric.REQUESTS, amount=1),
        ], self.db_path)

        events = fetch_quota_events(since=50.0, db_path=self.db_path)

        assert [e.timestamp for e in events] == [100.0, 200.0]
        assert events[1].metric is QuotaMetric.TOKENS
        assert events[1].amount == 50

    def test_fetch_filters_by_model(self):
        """Model filter restricts results."""
        insert_quota_event(
            QuotaEvent(timestamp=5.0, model="a", metric=QuotaMetric.REQUESTS, amount=1),
            self.db_path,
        )
        insert_quota_event(
            QuotaEvent(timestamp=6.0, model="b", metric=QuotaMetric.REQUESTS, amount=1),
            self.db_path,
        )

        events = fetch_quota_events(since=0.0, model="b", db_path=self.db_path)
        assert [e.model for e in events] == ["b"]

    def test_cutoff_is_exclusive(self):
        """An event exactly at the cutoff has aged out."""
        insert_quota_event(
            QuotaEvent(timestamp=60.0, model="a", metric=QuotaMetric.REQUESTS, amount=1),
            self.db_path,
        )
        assert fetch_quota_events(since=60.0, db_path=self.db_path) == []

    def test_repository_recent_events(self):
        """Repository reads the trailing window."""
        insert_quota_event(
            QuotaEvent(timestamp=970.0, model="a", metric=QuotaMetric.TOKENS, amount=7),
            self.db_path,
        )
        repo = ClaimGuardRepository(self.db_path)
        assert len(repo.recent_quota_events(window_seconds=60, now=1000.0)) == 1
        assert repo.recent_quota_events(window_seconds=20, now=1000.0) == []

    def test_sqlite_quota_sink(self):
        """The sink creates the schema and appends events."""
        db_path = os.path.join(self.temp_dir, "fresh.db")
        sink = SqliteQuotaSink(db_path)
        sink(QuotaEvent(timestamp=1.0, model="a", metric=QuotaMetric.REQUESTS, amount=1))

        assert len(fetch_quota_events(since=0.0, db_path=db_path)) == 1


class TestAuditEntries:
    """Test audit entry persistence and filtering."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        base = datetime(2024, 1, 1, 12, 0)
        entries = [
            AuditLogEntry(timestamp=base, action=AuditAction.ANALYZE_VIDEO,
                          result=AuditResult.SUCCESS, file_hashes=("h1",), token_usage=100,
                          model_used="gemini-2.5-flash-lite"),
            AuditLogEntry(timestamp=base + timedelta(hours=1), action=AuditAction.ANALYZE_IMAGE,
                          result=AuditResult.ERROR, security_flags=("analysis_failed",)),
            AuditLogEntry(timestamp=base + timedelta(hours=2), action=AuditAction.ANALYZE_VIDEO,
                          result=AuditResult.FLAGGED, security_flags=("manual_review_required",)),
        ]
        for entry in entries:
            insert_audit_entry(entry, self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_newest_first(self):
        """Entries come back newest first."""
        entries = fetch_audit_entries(db_path=self.db_path)
        assert [e.result for e in entries] == [
            AuditResult.FLAGGED,
            AuditResult.ERROR,
            AuditResult.SUCCESS,
        ]
        assert entries[2].file_hashes == ("h1",)
        assert entries[2].token_usage == 100

    def test_filters(self):
        """Action, result and date filters combine."""
        videos = fetch_audit_entries(action=AuditAction.ANALYZE_VIDEO, db_path=self.db_path)
        assert len(videos) == 2

        errors = fetch_audit_entries(result=AuditResult.ERROR, db_path=self.db_path)
        assert errors[0].security_flags == ("analysis_failed",)

        recent = fetch_audit_entries(
            from_date=datetime(2024, 1, 1, 12, 30),
            to_date=datetime(2024, 1, 1, 13, 30),
            db_path=self.db_path,
        )
        assert [e.action for e in recent] == [AuditAction.ANALYZE_IMAGE]

    def test_limit(self):
        """Limit caps the result size."""
        assert len(fetch_audit_entries(limit=1, db_path=self.db_path)) == 1

    def test_get_repository_tracks_path(self):
        """Repository singleton follows the requested path."""
        repo = get_repository(self.db_path)
        assert repo is get_repository(self.db_path)
        assert len(repo.audit_entries(limit=10)) == 3

        other = get_repository(os.path.join(self.temp_dir, "other.db"))
        assert other is not repo
