"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class EntryKind(Enum):
    """Kinds of balance-affecting ledger events."""
    CREDIT_PURCHASE = "credit-purchase"
    CREDIT_EARNED = "credit-earned"
    DEBIT_SPEND = "debit-spend"


class DownloadState(Enum):
    """Lifecycle of a generated artifact's payload.

    CREATED is the in-flight state between ``put`` and commit; only
    AVAILABLE and CONSUMED are ever persisted.
    """
    CREATED = "created"
    AVAILABLE = "available"
    CONSUMED = "consumed"


@dataclass(frozen=True)
class Account:
    """Current balance projection for one account."""
    account_id: str
    balance: int
    initial_balance: int
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable record of a balance change.

    Append-only: once written these records are never modified or deleted.
    """
    id: int
    account_id: str
    delta: int
    kind: EntryKind
    detail: str
    timestamp: datetime
    balance_after: int
    request_id: Optional[str] = None


@dataclass(frozen=True)
class LedgerPage:
    """One page of an account's ledger history, newest first."""
    entries: List[LedgerEntry]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return -(-self.total // self.limit) if self.limit else 0


@dataclass(frozen=True)
class ArtifactMetadata:
    """Audit record for one generated artifact."""
    artifact_id: str
    account_id: str
    storage_ref: str
    coins_charged: int
    params: Dict[str, Any]
    download_state: DownloadState
    created_at: datetime
    ledger_entry_id: Optional[int] = None
    consumed_at: Optional[datetime] = None


@dataclass(frozen=True)
class ArtifactPage:
    """One page of an account's artifacts, newest first."""
    artifacts: List[ArtifactMetadata] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 10
