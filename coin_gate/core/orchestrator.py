"""
Coin-gated generation orchestrator.

Composes ledger, rate limiter, retrying provider client and artifact store
into one transaction:

    IDLE -> BALANCE_CHECKED -> RATE_ACQUIRED -> PROVIDER_CALLED -> COMMITTED
                      \\______________ any failure ______________/-> ABORTED

Before COMMITTED nothing durable changes on the ledger. Payloads written
after the provider call are registered on a saga and deleted if the commit
does not happen. Coins are charged only when the debit, its ledger entry
and every artifact record commit together.
"""

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from coin_gate.config.loader import ServiceConfig
from coin_gate.providers import build_provider
from coin_gate.providers.base import GenerationRequest, ImageProvider
from coin_gate.storage.db import get_connection, transaction
from coin_gate.storage.models import ArtifactMetadata, DownloadState, LedgerEntry
from coin_gate.storage import repository

from .artifact_store import ArtifactStore
from .errors import CoinGateError, InsufficientFunds, InternalError
from .ledger import Ledger
from .pricing import CoinPricing, calculate_cost, clamp_samples
from .rate_limiter import TokenBucket, get_rate_limiter
from .retry import RetryingProviderClient, RetryPolicy
from .saga import Saga

logger = logging.getLogger(__name__)


class GenerationState(Enum):
    IDLE = "idle"
    BALANCE_CHECKED = "balance_checked"
    RATE_ACQUIRED = "rate_acquired"
    PROVIDER_CALLED = "provider_called"
    COMMITTED = "committed"
    ABORTED = "aborted"


@dataclass
class GenerationResult:
    """Outcome of a committed generation."""
    artifacts: List[ArtifactMetadata]
    coins_charged: int
    remaining_balance: int
    ledger_entry: LedgerEntry
    attempts: int = 0
    replayed: bool = False
    states: List[GenerationState] = field(default_factory=list)


class _DuplicateRequest(Exception):
    """Another call with the same idempotency key committed first."""


class GenerationOrchestrator:
    """Runs the validate, reserve, call, commit-or-compensate transaction."""

    def __init__(
        self,
        ledger: Ledger,
        artifact_store: ArtifactStore,
        client: RetryingProviderClient,
        pricing: CoinPricing,
        acquire_timeout: Optional[float] = None,
    ):
        if ledger.db_path != artifact_store.db_path:
            raise ValueError("ledger and artifact store must share one database")
        self.ledger = ledger
        self.artifact_store = artifact_store
        self.client = client
        self.pricing = pricing
        self.acquire_timeout = acquire_timeout

    def generate(
        self,
        account_id: str,
        request: GenerationRequest,
        timeout: Optional[float] = None,
        request_id: Optional[str] = None,
    ) -> GenerationResult:
        """Spend coins on a generation and persist its artifacts.

        Args:
            account_id: Verified account identifier from the identity layer
            request: Generation parameters; samples are clamped to limits
            timeout: Deadline for the limiter wait and for each provider
                attempt. Without one the limiter wait uses the configured
                acquire timeout and each attempt the provider's own
                request timeout
            request_id: Optional idempotency key; a repeated key returns
                the committed result without calling the provider

        Returns:
            GenerationResult for the committed transaction

        Raises:
            NotFound: If the account is unknown
            InsufficientFunds: At precheck or when a concurrent spend wins
            RateLimitTimeout: If no provider capacity arrives in time
            ProviderRejected, ProviderAuthFailed, ProviderUnavailable:
                Provider failures, no coins moved
            InternalError: Commit failed; nothing charged, payloads removed
        """
        states = [GenerationState.IDLE]
        acquire_timeout = self.acquire_timeout if timeout is None else timeout

        if request_id is not None:
            replay = self._replay(account_id, request_id, states)
            if replay is not None:
                return replay

        samples = clamp_samples(request.samples, self.pricing)
        if samples != request.samples:
            logger.info(f"Clamped samples from {request.samples} to {samples}")
            request = request.with_samples(samples)
        cost = calculate_cost(samples, self.pricing)

        try:
            if not self.ledger.reserve(account_id, cost):
                raise InsufficientFunds(account_id, cost, self.ledger.get_balance(account_id))
            states.append(GenerationState.BALANCE_CHECKED)

            def on_token(attempt: int) -> None:
                if GenerationState.RATE_ACQUIRED not in states:
                    states.append(GenerationState.RATE_ACQUIRED)

            result = self.client.invoke(
                request, timeout=timeout, acquire_timeout=acquire_timeout, on_token=on_token
            )
            states.append(GenerationState.PROVIDER_CALLED)
        except CoinGateError as e:
            states.append(GenerationState.ABORTED)
            logger.info(f"Generation for {account_id} aborted after {states[-2].value}: {e.kind}")
            raise

        units = result.artifacts[:samples]
        charge = len(units) * self.pricing.unit_cost
        saga = Saga(f"generate:{account_id}")
        try:
            committed = self._commit(account_id, request, units, charge, request_id, saga)
        except _DuplicateRequest:
            saga.compensate()
            states.append(GenerationState.ABORTED)
            logger.info(f"Duplicate request {request_id} for {account_id}; replaying committed result")
            return self._replay(account_id, request_id, [GenerationState.IDLE])
        except InsufficientFunds:
            saga.compensate()
            states.append(GenerationState.ABORTED)
            logger.info(f"Generation for {account_id} lost the balance race at commit")
            raise
        except Exception as e:
            saga.compensate()
            states.append(GenerationState.ABORTED)
            logger.error(f"Generation commit failed for {account_id}: {e!r}")
            raise InternalError(f"Failed to commit generation: {e}") from e

        saga.complete()
        entry, artifacts = committed
        states.append(GenerationState.COMMITTED)
        logger.info(
            f"Generation committed for {account_id}: {len(artifacts)} artifact(s), "
            f"{charge} coins, {result.attempts} attempt(s)"
        )
        return GenerationResult(
            artifacts=artifacts,
            coins_charged=charge,
            remaining_balance=entry.balance_after,
            ledger_entry=entry,
            attempts=result.attempts,
            states=states,
        )

    def _commit(self, account_id, request, units, charge, request_id, saga):
        """Write payloads, then debit and record metadata in one transaction."""
        staged = []
        for unit in units:
            artifact_id = uuid.uuid4().hex
            storage_ref = self.artifact_store.put(f"{account_id}/{artifact_id}", unit.payload)
            saga.add_compensation(f"delete payload {storage_ref}", self.artifact_store.delete, storage_ref)
            staged.append((artifact_id, storage_ref, unit))

        params = request.to_params()
        with self.ledger.locked(account_id):
            try:
                with transaction(self.ledger.db_path) as conn:
                    entry = self.ledger.commit_debit(
                        account_id,
                        charge,
                        f"Generated {len(staged)} image(s): {request.prompt[:80]}",
                        request_id=request_id,
                        conn=conn,
                    )
                    artifacts = []
                    for artifact_id, storage_ref, unit in staged:
                        metadata = ArtifactMetadata(
                            artifact_id=artifact_id,
                            account_id=account_id,
                            storage_ref=storage_ref,
                            coins_charged=self.pricing.unit_cost,
                            params=dict(params, seed=unit.seed if unit.seed is not None else request.seed),
                            download_state=DownloadState.AVAILABLE,
                            created_at=entry.timestamp,
                            ledger_entry_id=entry.id,
                        )
                        self.artifact_store.record(conn, metadata)
                        artifacts.append(metadata)
            except sqlite3.IntegrityError as e:
                if request_id is not None and self.ledger.find_by_request(account_id, request_id):
                    raise _DuplicateRequest() from e
                raise
        return entry, artifacts

    def _replay(self, account_id: str, request_id: str, states: List[GenerationState]) -> Optional[GenerationResult]:
        entry = self.ledger.find_by_request(account_id, request_id)
        if entry is None:
            return None
        conn = get_connection(self.ledger.db_path)
        try:
            artifacts = repository.fetch_artifacts_for_entry(conn, entry.id)
        finally:
            conn.close()
        logger.info(f"Replaying committed request {request_id} for {account_id}")
        return GenerationResult(
            artifacts=artifacts,
            coins_charged=-entry.delta,
            remaining_balance=self.ledger.get_balance(account_id),
            ledger_entry=entry,
            attempts=0,
            replayed=True,
            states=states + [GenerationState.COMMITTED],
        )


def build_orchestrator(
    config: ServiceConfig,
    provider: Optional[ImageProvider] = None,
    rate_limiter: Optional[TokenBucket] = None,
) -> GenerationOrchestrator:
    """Wire the components from configuration.

    The rate limiter defaults to the process-wide shared instance.
    """
    db_path = config.storage.db_path
    repository.initialize_schema(db_path)
    limiter = rate_limiter or get_rate_limiter(
        config.rate_limit.capacity, config.rate_limit.refill_per_second
    )
    client = RetryingProviderClient(
        provider or build_provider(config.provider),
        limiter,
        RetryPolicy(
            max_attempts=config.retry.max_attempts,
            base_delay=config.retry.base_delay,
            max_delay=config.retry.max_delay,
        ),
    )
    return GenerationOrchestrator(
        ledger=Ledger(db_path),
        artifact_store=ArtifactStore(config.storage.artifact_dir, db_path),
        client=client,
        pricing=CoinPricing.from_config(config.pricing),
        acquire_timeout=config.rate_limit.acquire_timeout,
    )
