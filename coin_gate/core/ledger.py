"""
Coin ledger.

Append-only balance-affecting records plus a current-balance projection.

Concurrency discipline:
1. Every mutation of one account runs under that account's lock
2. Inside the lock, the balance change is a conditional update so the
   database itself refuses to go negative
3. The balance change and its ledger entry commit in one transaction
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from coin_gate.storage.db import DEFAULT_DB_PATH, get_connection, transaction
from coin_gate.storage.models import Account, EntryKind, LedgerEntry, LedgerPage
from coin_gate.storage import repository

from .errors import InsufficientFunds, NotFound

logger = logging.getLogger(__name__)

CREDIT_KINDS = (EntryKind.CREDIT_PURCHASE, EntryKind.CREDIT_EARNED)


def _validate_amount(amount: int) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValueError(f"amount must be a positive integer, got {amount!r}")


class Ledger:
    """Per-account coin balances backed by SQLite."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        # Entries live only while some caller holds or waits on them
        self._locks: Dict[str, threading.RLock] = {}
        self._lock_users: Dict[str, int] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def locked(self, account_id: str) -> Iterator[None]:
        """Hold the exclusive section for one account.

        Re-entrant, so a caller holding the lock may call commit_debit.
        Locks of different accounts are independent.
        """
        with self._locks_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = threading.RLock()
            self._lock_users[account_id] = self._lock_users.get(account_id, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                self._lock_users[account_id] -= 1
                if not self._lock_users[account_id]:
                    del self._lock_users[account_id]
                    del self._locks[account_id]

    def open_account(self, account_id: str, initial_balance: int = 0) -> Account:
        """Create an account with an opening balance.

        Raises:
            ValueError: If the id is empty, the balance negative, or the
                account already exists
        """
        if not account_id or not account_id.strip():
            raise ValueError("account_id is required and cannot be empty")
        if isinstance(initial_balance, bool) or not isinstance(initial_balance, int) or initial_balance < 0:
            raise ValueError("initial_balance must be a non-negative integer")

        with self.locked(account_id):
            try:
                with transaction(self.db_path) as conn:
                    account = repository.insert_account(conn, account_id, initial_balance)
            except sqlite3.IntegrityError:
                raise ValueError(f"Account already exists: {account_id}")
        logger.info(f"Opened account {account_id} with balance {initial_balance}")
        return account

    def get_account(self, account_id: str) -> Account:
        conn = get_connection(self.db_path)
        try:
            account = repository.fetch_account(conn, account_id)
        finally:
            conn.close()
        if account is None:
            raise NotFound(f"Unknown account: {account_id}")
        return account

    def get_balance(self, account_id: str) -> int:
        """Current balance of an account.

        Raises:
            NotFound: If the account is unknown
        """
        return self.get_account(account_id).balance

    def reserve(self, account_id: str, amount: int) -> bool:
        """Advisory precheck that the balance covers ``amount``.

        Nothing is held: a concurrent spend may still win before commit,
        which is why commit_debit checks again.
        """
        _validate_amount(amount)
        return self.get_balance(account_id) >= amount

    def commit_debit(
        self,
        account_id: str,
        amount: int,
        reason: str,
        request_id: Optional[str] = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> LedgerEntry:
        """Atomically re-check and spend ``amount`` coins.

        Args:
            account_id: Account to debit
            amount: Positive number of coins
            reason: Free-text detail stored on the entry
            request_id: Optional idempotency key, unique per account
            conn: Join this open transaction instead of opening one

        Returns:
            The appended entry; ``balance_after`` is the applied balance

        Raises:
            InsufficientFunds: If a concurrent spend left too few coins
            NotFound: If the account is unknown
        """
        _validate_amount(amount)
        with self.locked(account_id):
            if conn is not None:
                return self._debit(conn, account_id, amount, reason, request_id)
            with transaction(self.db_path) as own_conn:
                return self._debit(own_conn, account_id, amount, reason, request_id)

    def _debit(
        self,
        conn: sqlite3.Connection,
        account_id: str,
        amount: int,
        reason: str,
        request_id: Optional[str],
    ) -> LedgerEntry:
        if not repository.apply_balance_delta(conn, account_id, -amount):
            account = repository.fetch_account(conn, account_id)
            if account is None:
                raise NotFound(f"Unknown account: {account_id}")
            logger.info(
                f"Debit of {amount} refused for {account_id}: balance is {account.balance}"
            )
            raise InsufficientFunds(account_id, amount, account.balance)
        entry = repository.insert_ledger_entry(
            conn, account_id, -amount, EntryKind.DEBIT_SPEND, reason, request_id
        )
        logger.info(f"Debited {amount} from {account_id}, balance now {entry.balance_after}")
        return entry

    def credit(
        self,
        account_id: str,
        amount: int,
        kind: EntryKind = EntryKind.CREDIT_PURCHASE,
        detail: Optional[str] = None,
    ) -> LedgerEntry:
        """Add coins from a purchase or an earned reward.

        Raises:
            ValueError: If the amount is not positive or kind is a debit
            NotFound: If the account is unknown
        """
        _validate_amount(amount)
        if kind not in CREDIT_KINDS:
            raise ValueError(f"{kind.value} is not a credit kind")
        if detail is None:
            verb = "Purchased" if kind == EntryKind.CREDIT_PURCHASE else "Earned"
            detail = f"{verb} {amount} coins"

        with self.locked(account_id):
            with transaction(self.db_path) as conn:
                if not repository.apply_balance_delta(conn, account_id, amount):
                    raise NotFound(f"Unknown account: {account_id}")
                entry = repository.insert_ledger_entry(conn, account_id, amount, kind, detail)
        logger.info(f"Credited {amount} to {account_id} ({kind.value})")
        return entry

    def history(self, account_id: str, page: int = 1, limit: int = 10) -> LedgerPage:
        """One page of ledger entries, newest first."""
        if page < 1 or limit < 1:
            raise ValueError("page and limit must be >= 1")
        conn = get_connection(self.db_path)
        try:
            if repository.fetch_account(conn, account_id) is None:
                raise NotFound(f"Unknown account: {account_id}")
            entries = repository.fetch_ledger_entries(
                conn, account_id, limit=limit, offset=(page - 1) * limit
            )
            total = repository.count_ledger_entries(conn, account_id)
        finally:
            conn.close()
        return LedgerPage(entries=entries, total=total, page=page, limit=limit)

    def find_by_request(self, account_id: str, request_id: str) -> Optional[LedgerEntry]:
        conn = get_connection(self.db_path)
        try:
            return repository.fetch_entry_by_request(conn, account_id, request_id)
        finally:
            conn.close()

    def is_consistent(self, account_id: str) -> bool:
        """Check the balance projection against the entry log.

        The stored balance must equal the opening balance plus the sum of
        every ledger entry's delta.

        Raises:
            NotFound: If the account is unknown
        """
        conn = get_connection(self.db_path)
        try:
            account = repository.fetch_account(conn, account_id)
            if account is None:
                raise NotFound(f"Unknown account: {account_id}")
            total = repository.sum_ledger_deltas(conn, account_id)
        finally:
            conn.close()
        expected = account.initial_balance + total
        if account.balance != expected:
            logger.error(
                f"Balance of {account_id} is {account.balance}, entries imply {expected}"
            )
            return False
        return True
