"""
Unit tests for storage layer.

Tests schema creation, conditional balance updates and artifact state rows.
"""

import os
import shutil
import sqlite3
import tempfile
from datetime import datetime, timezone

import pytest

from coin_gate.storage.db import get_connection, transaction
from coin_gate.storage.models import ArtifactMetadata, DownloadState, EntryKind
from coin_gate.storage import repository


class TestStorageSchema:
    """Test database schema creation and structure."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        repository.initialize_schema(self.db_path)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_schema_creation(self):
        """Verify tables are created correctly."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT name FROM sqlite_master
                WHERE type='table' AND name IN ('account', 'ledger_entry', 'artifact')
                ORDER BY name
            """)
            assert [row[0] for row in cursor.fetchall()] == ["account", "artifact", "ledger_entry"]

            cursor = conn.execute("PRAGMA table_info(ledger_entry)")
            column_names = [col[1] for col in cursor.fetchall()]
            assert column_names == [
                'id', 'account_id', 'delta', 'kind', 'detail',
                'timestamp', 'balance_after', 'request_id'
            ]
        finally:
            conn.close()

    def test_schema_initialization_is_idempotent(self):
        """Running init twice keeps existing data."""
        with transaction(self.db_path) as conn:
            repository.insert_account(conn, "acct", 5)

        repository.initialize_schema(self.db_path)

        conn = get_connection(self.db_path)
        try:
            assert repository.fetch_account(conn, "acct").balance == 5
        finally:
            conn.close()


class TestBalanceUpdates:
    """Test the conditional balance update and its guard rails."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        repository.initialize_schema(self.db_path)
        with transaction(self.db_path) as conn:
            repository.insert_account(conn, "acct", 10)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_delta_applied_when_covered(self):
        with transaction(self.db_path) as conn:
            assert repository.apply_balance_delta(conn, "acct", -10) is True
            assert repository.fetch_account(conn, "acct").balance == 0

    def test_delta_refused_when_it_would_go_negative(self):
        with transaction(self.db_path) as conn:
            assert repository.apply_balance_delta(conn, "acct", -11) is False
            assert repository.fetch_account(conn, "acct").balance == 10

    def test_delta_refused_for_unknown_account(self):
        with transaction(self.db_path) as conn:
            assert repository.apply_balance_delta(conn, "nobody", 5) is False

    def test_check_constraint_blocks_direct_negative_write(self):
        with pytest.raises(sqlite3.IntegrityError):
            with transaction(self.db_path) as conn:
                conn.execute("UPDATE account SET balance = -1 WHERE account_id = 'acct'")

    def test_transaction_rolls_back_on_error(self):
        with pytest.raises(RuntimeError):
            with transaction(self.db_path) as conn:
                repository.apply_balance_delta(conn, "acct", -4)
                repository.insert_ledger_entry(conn, "acct", -4, EntryKind.DEBIT_SPEND, "spend")
                raise RuntimeError("boom")

        conn = get_connection(self.db_path)
        try:
            assert repository.fetch_account(conn, "acct").balance == 10
            assert repository.count_ledger_entries(conn, "acct") == 0
        finally:
            conn.close()

    def test_ledger_entry_records_balance_after(self):
        with transaction(self.db_path) as conn:
            repository.apply_balance_delta(conn, "acct", -3)
            entry = repository.insert_ledger_entry(
                conn, "acct", -3, EntryKind.DEBIT_SPEND, "spend", request_id="req-1"
            )

        assert entry.balance_after == 7
        conn = get_connection(self.db_path)
        try:
            stored = repository.fetch_entry_by_request(conn, "acct", "req-1")
            assert stored == entry
            assert repository.sum_ledger_deltas(conn, "acct") == -3
        finally:
            conn.close()

    def test_request_id_unique_per_account(self):
        with transaction(self.db_path) as conn:
            repository.insert_ledger_entry(conn, "acct", 1, EntryKind.CREDIT_EARNED, "ad", "req-1")
        with pytest.raises(sqlite3.IntegrityError):
            with transaction(self.db_path) as conn:
                repository.insert_ledger_entry(conn, "acct", 1, EntryKind.CREDIT_EARNED, "ad", "req-1")


class TestArtifactRows:
    """Test artifact metadata persistence and the consumed transition."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        repository.initialize_schema(self.db_path)
        with transaction(self.db_path) as conn:
            repository.insert_account(conn, "acct", 10)
            repository.insert_artifact(conn, ArtifactMetadata(
                artifact_id="art-1",
                account_id="acct",
                storage_ref="acct/art-1.png",
                coins_charged=10,
                params={"prompt": "a lighthouse", "samples": 1},
                download_state=DownloadState.AVAILABLE,
                created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            ))

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_artifact_round_trips_params(self):
        conn = get_connection(self.db_path)
        try:
            artifact = repository.fetch_artifact(conn, "art-1")
        finally:
            conn.close()
        assert artifact.params == {"prompt": "a lighthouse", "samples": 1}
        assert artifact.download_state == DownloadState.AVAILABLE
        assert artifact.consumed_at is None

    def test_mark_consumed_succeeds_once(self):
        with transaction(self.db_path) as conn:
            assert repository.mark_artifact_consumed(conn, "art-1") is True
        with transaction(self.db_path) as conn:
            assert repository.mark_artifact_consumed(conn, "art-1") is False
            artifact = repository.fetch_artifact(conn, "art-1")
        assert artifact.download_state == DownloadState.CONSUMED
        assert artifact.consumed_at is not None

    def test_delete_artifact_row_checks_owner(self):
        with transaction(self.db_path) as conn:
            assert repository.delete_artifact_row(conn, "someone-else", "art-1") is False
            assert repository.delete_artifact_row(conn, "acct", "art-1") is True
            assert repository.fetch_artifact(conn, "art-1") is None
