"""
Retrying provider client.

Wraps a single provider call with bounded retry and exponential backoff.

Outcome classification per attempt:
1. Valid artifacts - return immediately
2. ProviderRejected / ProviderAuthFailed - fatal, never retried
3. ProviderTransientError or any other exception - back off and retry
4. Retries exhausted - ProviderUnavailable, chained to the last failure

Every attempt takes one rate limiter token before the network call. The
backoff sleep holds no token and no ledger lock.
"""

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, Optional

from coin_gate.providers.base import (
    GenerationRequest,
    ImageProvider,
    ProviderResult,
    ProviderTransientError,
)

from .errors import ProviderAuthFailed, ProviderRejected, ProviderUnavailable
from .rate_limiter import TokenBucket

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff."""
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Seconds to wait after the failed ``attempt`` (0-based).

        A provider-supplied Retry-After wins when it is longer, still
        capped at max_delay.
        """
        delay = self.base_delay * (2 ** attempt)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self.max_delay)


class RetryingProviderClient:
    """Provider client applying the retry policy and the shared rate limiter."""

    def __init__(
        self,
        provider: ImageProvider,
        rate_limiter: TokenBucket,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    def invoke(
        self,
        request: GenerationRequest,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        acquire_timeout: Optional[float] = None,
        on_token: Optional[Callable[[int], None]] = None,
    ) -> ProviderResult:
        """Call the provider until it succeeds or the budget runs out.

        Args:
            request: Generation parameters
            max_attempts: Overrides the policy's attempt budget
            base_delay: Overrides the policy's base backoff delay
            timeout: Deadline for each provider call, not cumulative across
                retries; None leaves the adapter's own request timeout
            acquire_timeout: Deadline for each limiter wait; defaults to
                ``timeout``
            on_token: Called with the attempt number after each token

        Returns:
            Provider result with ``attempts`` set to the attempts used

        Raises:
            RateLimitTimeout: If no token arrives before ``acquire_timeout``
            ProviderRejected: If the provider reported a failure
            ProviderAuthFailed: If credentials were refused
            ProviderUnavailable: If every attempt failed
        """
        policy = self.policy
        if max_attempts is not None:
            policy = replace(policy, max_attempts=max_attempts)
        if base_delay is not None:
            policy = replace(policy, base_delay=base_delay, max_delay=max(policy.max_delay, base_delay))
        if policy.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        if acquire_timeout is None:
            acquire_timeout = timeout

        last_error: Optional[BaseException] = None
        for attempt in range(policy.max_attempts):
            self.rate_limiter.acquire(timeout=acquire_timeout)
            if on_token is not None:
                on_token(attempt + 1)

            retry_after = None
            try:
                result = self.provider.generate(request, timeout=timeout)
            except (ProviderRejected, ProviderAuthFailed) as e:
                logger.warning(f"Provider call failed fatally on attempt {attempt + 1}: {e}")
                raise
            except ProviderTransientError as e:
                last_error = e
                retry_after = e.retry_after
                logger.warning(f"Transient provider failure on attempt {attempt + 1}: {e}")
            except Exception as e:
                last_error = e
                logger.warning(f"Unexpected provider failure on attempt {attempt + 1}: {e!r}")
            else:
                if not result.artifacts:
                    raise ProviderRejected("Provider returned no artifacts")
                logger.debug(f"Provider call succeeded on attempt {attempt + 1}")
                return replace(result, attempts=attempt + 1)

            if attempt + 1 < policy.max_attempts:
                delay = policy.delay_for(attempt, retry_after)
                logger.info(f"Retrying provider call in {delay:.2f}s")
                self._sleep(delay)

        raise ProviderUnavailable(
            f"Provider unavailable after {policy.max_attempts} attempt(s): {last_error}",
            attempts=policy.max_attempts,
        ) from last_error
