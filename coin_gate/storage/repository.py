"""
Repository functions for data access.

Handles database operations and data persistence logic. Functions that
take a ``conn`` run inside the caller's transaction; functions that take a
``db_path`` open and close their own connection.
"""

import json
import sqlite3
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    Account,
    ArtifactMetadata,
    DownloadState,
    EntryKind,
    LedgerEntry,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the account, ledger_entry and artifact tables if missing.

    ledger_entry is an append-only ledger: no UPDATE or DELETE is ever
    issued against it. The balance CHECK makes a negative balance
    impossible even if a caller bypasses the conditional update.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS account (
                account_id TEXT PRIMARY KEY,
                balance INTEGER NOT NULL CHECK (balance >= 0),
                initial_balance INTEGER NOT NULL CHECK (initial_balance >= 0),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS ledger_entry (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id TEXT NOT NULL REFERENCES account(account_id),
                delta INTEGER NOT NULL,
                kind TEXT NOT NULL,
                detail TEXT NOT NULL DEFAULT '',
                timestamp TEXT NOT NULL,
                balance_after INTEGER NOT NULL,
                request_id TEXT,
                UNIQUE (account_id, request_id)
            );

            CREATE INDEX IF NOT EXISTS idx_ledger_entry_account
                ON ledger_entry (account_id, id DESC);

            CREATE TABLE IF NOT EXISTS artifact (
                artifact_id TEXT PRIMARY KEY,
                account_id TEXT NOT NULL REFERENCES account(account_id),
                ledger_entry_id INTEGER REFERENCES ledger_entry(id),
                storage_ref TEXT NOT NULL,
                coins_charged INTEGER NOT NULL,
                params_json TEXT NOT NULL,
                download_state TEXT NOT NULL,
                created_at TEXT NOT NULL,
                consumed_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_artifact_account
                ON artifact (account_id, created_at DESC);
        """)
    finally:
        conn.close()


# Accounts

def insert_account(conn: sqlite3.Connection, account_id: str, initial_balance: int) -> Account:
    now = utcnow()
    conn.execute(
        """
        INSERT INTO account (account_id, balance, initial_balance, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (account_id, initial_balance, initial_balance, now.isoformat(), now.isoformat()),
    )
    return Account(
        account_id=account_id,
        balance=initial_balance,
        initial_balance=initial_balance,
        created_at=now,
        updated_at=now,
    )


def fetch_account(conn: sqlite3.Connection, account_id: str) -> Optional[Account]:
    row = conn.execute(
        """
        SELECT account_id, balance, initial_balance, created_at, updated_at
        FROM account WHERE account_id = ?
        """,
        (account_id,),
    ).fetchone()
    if row is None:
        return None
    return Account(
        account_id=row[0],
        balance=row[1],
        initial_balance=row[2],
        created_at=datetime.fromisoformat(row[3]),
        updated_at=datetime.fromisoformat(row[4]),
    )


def apply_balance_delta(conn: sqlite3.Connection, account_id: str, delta: int) -> bool:
    """Apply a signed delta, refusing any change that would go negative.

    This is a single compare-and-apply statement: the balance guard and the
    write happen atomically, so two debits can never both spend the same
    snapshot.

    Returns:
        True if the row was updated, False if the account is unknown or
        the balance is too low.
    """
    cursor = conn.execute(
        """
        UPDATE account
        SET balance = balance + ?, updated_at = ?
        WHERE account_id = ? AND balance + ? >= 0
        """,
        (delta, utcnow().isoformat(), account_id, delta),
    )
    return cursor.rowcount == 1


# Ledger entries

_ENTRY_COLUMNS = "id, account_id, delta, kind, detail, timestamp, balance_after, request_id"


def _row_to_entry(row: Tuple) -> LedgerEntry:
    return LedgerEntry(
        id=row[0],
        account_id=row[1],
        delta=row[2],
        kind=EntryKind(row[3]),
        detail=row[4],
        timestamp=datetime.fromisoformat(row[5]),
        balance_after=row[6],
        request_id=row[7],
    )


def insert_ledger_entry(
    conn: sqlite3.Connection,
    account_id: str,
    delta: int,
    kind: EntryKind,
    detail: str,
    request_id: Optional[str] = None,
) -> LedgerEntry:
    """Append one entry, stamping it with the balance it produced.

    Must run in the same transaction as the matching
    :func:`apply_balance_delta` call.
    """
    balance_after = conn.execute(
        "SELECT balance FROM account WHERE account_id = ?", (account_id,)
    ).fetchone()[0]
    now = utcnow()
    cursor = conn.execute(
        """
        INSERT INTO ledger_entry
        (account_id, delta, kind, detail, timestamp, balance_after, request_id)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (account_id, delta, kind.value, detail, now.isoformat(), balance_after, request_id),
    )
    return LedgerEntry(
        id=cursor.lastrowid,
        account_id=account_id,
        delta=delta,
        kind=kind,
        detail=detail,
        timestamp=now,
        balance_after=balance_after,
        request_id=request_id,
    )


def fetch_ledger_entries(
    conn: sqlite3.Connection,
    account_id: str,
    limit: int = 10,
    offset: int = 0,
) -> List[LedgerEntry]:
    """Fetch entries for an account, newest first."""
    cursor = conn.execute(
        f"""
        SELECT {_ENTRY_COLUMNS} FROM ledger_entry
        WHERE account_id = ?
        ORDER BY id DESC LIMIT ? OFFSET ?
        """,
        (account_id, limit, offset),
    )
    return [_row_to_entry(row) for row in cursor.fetchall()]


def count_ledger_entries(conn: sqlite3.Connection, account_id: str) -> int:
    return conn.execute(
        "SELECT COUNT(*) FROM ledger_entry WHERE account_id = ?", (account_id,)
    ).fetchone()[0]


def fetch_entry_by_request(
    conn: sqlite3.Connection, account_id: str, request_id: str
) -> Optional[LedgerEntry]:
    row = conn.execute(
        f"""
        SELECT {_ENTRY_COLUMNS} FROM ledger_entry
        WHERE account_id = ? AND request_id = ?
        """,
        (account_id, request_id),
    ).fetchone()
    return _row_to_entry(row) if row else None


def sum_ledger_deltas(conn: sqlite3.Connection, account_id: str) -> int:
    return conn.execute(
        "SELECT COALESCE(SUM(delta), 0) FROM ledger_entry WHERE account_id = ?",
        (account_id,),
    ).fetchone()[0]


# Artifacts

_ARTIFACT_COLUMNS = (
    "artifact_id, account_id, ledger_entry_id, storage_ref, coins_charged, "
    "params_json, download_state, created_at, consumed_at"
)


def _row_to_artifact(row: Tuple) -> ArtifactMetadata:
    return ArtifactMetadata(
        artifact_id=row[0],
        account_id=row[1],
        ledger_entry_id=row[2],
        storage_ref=row[3],
        coins_charged=row[4],
        params=json.loads(row[5]),
        download_state=DownloadState(row[6]),
        created_at=datetime.fromisoformat(row[7]),
        consumed_at=datetime.fromisoformat(row[8]) if row[8] else None,
    )


def insert_artifact(conn: sqlite3.Connection, metadata: ArtifactMetadata) -> None:
    conn.execute(
        f"""
        INSERT INTO artifact ({_ARTIFACT_COLUMNS})
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            metadata.artifact_id,
            metadata.account_id,
            metadata.ledger_entry_id,
            metadata.storage_ref,
            metadata.coins_charged,
            json.dumps(metadata.params, sort_keys=True),
            metadata.download_state.value,
            metadata.created_at.isoformat(),
            metadata.consumed_at.isoformat() if metadata.consumed_at else None,
        ),
    )


def fetch_artifact(conn: sqlite3.Connection, artifact_id: str) -> Optional[ArtifactMetadata]:
    row = conn.execute(
        f"SELECT {_ARTIFACT_COLUMNS} FROM artifact WHERE artifact_id = ?",
        (artifact_id,),
    ).fetchone()
    return _row_to_artifact(row) if row else None


def fetch_artifacts_for_account(
    conn: sqlite3.Connection,
    account_id: str,
    limit: int = 10,
    offset: int = 0,
) -> List[ArtifactMetadata]:
    cursor = conn.execute(
        f"""
        SELECT {_ARTIFACT_COLUMNS} FROM artifact
        WHERE account_id = ?
        ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?
        """,
        (account_id, limit, offset),
    )
    return [_row_to_artifact(row) for row in cursor.fetchall()]


def fetch_artifacts_for_entry(conn: sqlite3.Connection, ledger_entry_id: int) -> List[ArtifactMetadata]:
    cursor = conn.execute(
        f"""
        SELECT {_ARTIFACT_COLUMNS} FROM artifact
        WHERE ledger_entry_id = ? ORDER BY rowid
        """,
        (ledger_entry_id,),
    )
    return [_row_to_artifact(row) for row in cursor.fetchall()]


def count_artifacts(conn: sqlite3.Connection, account_id: str) -> int:
    return conn.execute(
        "SELECT COUNT(*) FROM artifact WHERE account_id = ?", (account_id,)
    ).fetchone()[0]


def mark_artifact_consumed(conn: sqlite3.Connection, artifact_id: str) -> bool:
    """Flip one artifact from available to consumed.

    Returns:
        True for exactly one caller per artifact; every later or
        concurrent caller gets False.
    """
    cursor = conn.execute(
        """
        UPDATE artifact SET download_state = ?, consumed_at = ?
        WHERE artifact_id = ? AND download_state = ?
        """,
        (
            DownloadState.CONSUMED.value,
            utcnow().isoformat(),
            artifact_id,
            DownloadState.AVAILABLE.value,
        ),
    )
    return cursor.rowcount == 1


def delete_artifact_row(conn: sqlite3.Connection, account_id: str, artifact_id: str) -> bool:
    cursor = conn.execute(
        "DELETE FROM artifact WHERE artifact_id = ? AND account_id = ?",
        (artifact_id, account_id),
    )
    return cursor.rowcount == 1
