"""
Tests for the retrying provider client.
"""

import pytest

from coin_gate.core.errors import (
    ProviderAuthFailed,
    ProviderRejected,
    ProviderUnavailable,
    RateLimitTimeout,
)
from coin_gate.core.rate_limiter import TokenBucket
from coin_gate.core.retry import RetryingProviderClient, RetryPolicy
from coin_gate.providers.base import GenerationRequest, ProviderResult, ProviderTransientError

from conftest import FakeProvider


class TestRetryPolicy:
    """Test the backoff schedule."""

    def test_exponential_delays(self):
        policy = RetryPolicy(max_attempts=5, base_delay=0.5, max_delay=8.0)
        assert [policy.delay_for(a) for a in range(5)] == [0.5, 1.0, 2.0, 4.0, 8.0]

    def test_delay_is_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=3.0)
        assert policy.delay_for(10) == 3.0

    def test_retry_after_wins_when_longer(self):
        policy = RetryPolicy(base_delay=0.5, max_delay=8.0)
        assert policy.delay_for(0, retry_after=2.0) == 2.0
        assert policy.delay_for(2, retry_after=0.1) == 2.0
        assert policy.delay_for(0, retry_after=60.0) == 8.0


class TestRetryingProviderClient:
    """Test attempt classification, token accounting and backoff."""

    def setup_method(self):
        self.sleeps = []
        self.request = GenerationRequest(prompt="a red fox in snow")

    def make_client(self, provider, fake_clock, capacity=10, **policy):
        limiter = TokenBucket(capacity, 1.0, clock=fake_clock.now, sleep=fake_clock.sleep)
        client = RetryingProviderClient(
            provider, limiter, RetryPolicy(**policy), sleep=self.sleeps.append
        )
        return client, limiter

    def test_success_on_first_attempt(self, fake_clock):
        provider = FakeProvider()
        client, limiter = self.make_client(provider, fake_clock)

        result = client.invoke(self.request)

        assert result.attempts == 1
        assert len(result.artifacts) == 1
        assert self.sleeps == []
        assert limiter.available_tokens() == pytest.approx(9.0)

    def test_transient_failures_then_success(self, fake_clock):
        provider = FakeProvider([
            ProviderTransientError("503"),
            ProviderTransientError("timeout"),
        ])
        client, limiter = self.make_client(provider, fake_clock)

        result = client.invoke(self.request)

        assert result.attempts == 3
        assert self.sleeps == [0.5, 1.0]
        assert len(provider.calls) == 3
        # One token per attempt, retries included
        assert limiter.available_tokens() == pytest.approx(7.0)

    def test_unknown_exceptions_are_retried(self, fake_clock):
        provider = FakeProvider([RuntimeError("socket reset")])
        client, _ = self.make_client(provider, fake_clock)

        assert client.invoke(self.request).attempts == 2

    @pytest.mark.parametrize("error", [
        ProviderRejected("content filtered"),
        ProviderAuthFailed("bad key"),
    ])
    def test_fatal_errors_are_not_retried(self, fake_clock, error):
        provider = FakeProvider([error])
        client, _ = self.make_client(provider, fake_clock)

        with pytest.raises(type(error)):
            client.invoke(self.request)

        assert len(provider.calls) == 1
        assert self.sleeps == []

    def test_exhaustion_raises_provider_unavailable(self, fake_clock):
        last = ProviderTransientError("still down")
        provider = FakeProvider([ProviderTransientError("down"), ProviderTransientError("down"), last])
        client, limiter = self.make_client(provider, fake_clock)

        with pytest.raises(ProviderUnavailable) as excinfo:
            client.invoke(self.request)

        assert excinfo.value.attempts == 3
        assert excinfo.value.retryable is True
        assert excinfo.value.__cause__ is last
        # No sleep after the final attempt
        assert self.sleeps == [0.5, 1.0]
        assert limiter.available_tokens() == pytest.approx(7.0)

    def test_retry_after_is_honored(self, fake_clock):
        provider = FakeProvider([ProviderTransientError("429", retry_after=3.0)])
        client, _ = self.make_client(provider, fake_clock)

        client.invoke(self.request)

        assert self.sleeps == [3.0]

    def test_empty_result_is_rejected(self, fake_clock):
        provider = FakeProvider([ProviderResult(artifacts=[])])
        client, _ = self.make_client(provider, fake_clock)

        with pytest.raises(ProviderRejected, match="no artifacts"):
            client.invoke(self.request)
        assert len(provider.calls) == 1

    def test_per_call_overrides(self, fake_clock):
        provider = FakeProvider([ProviderTransientError("down")] * 5)
        client, _ = self.make_client(provider, fake_clock)

        with pytest.raises(ProviderUnavailable):
            client.invoke(self.request, max_attempts=5, base_delay=0.1)

        assert len(provider.calls) == 5
        assert self.sleeps == pytest.approx([0.1, 0.2, 0.4, 0.8])

    def test_invalid_attempt_budget(self, fake_clock):
        client, _ = self.make_client(FakeProvider(), fake_clock)
        with pytest.raises(ValueError):
            client.invoke(self.request, max_attempts=0)

    def test_timeout_is_passed_to_provider(self, fake_clock):
        provider = FakeProvider()
        client, _ = self.make_client(provider, fake_clock)

        client.invoke(self.request, timeout=12.5)

        assert provider.calls[0][1] == 12.5

    def test_on_token_reports_each_attempt(self, fake_clock):
        provider = FakeProvider([ProviderTransientError("down")])
        client, _ = self.make_client(provider, fake_clock)
        tokens = []

        client.invoke(self.request, on_token=tokens.append)

        assert tokens == [1, 2]

    def test_rate_limit_timeout_stops_before_provider_call(self, fake_clock):
        provider = FakeProvider()
        client, limiter = self.make_client(provider, fake_clock, capacity=1)
        limiter.acquire()

        with pytest.raises(RateLimitTimeout):
            client.invoke(self.request, timeout=0.5)

        assert provider.calls == []

    def test_acquire_timeout_leaves_provider_timeout_alone(self, fake_clock):
        provider = FakeProvider()
        client, limiter = self.make_client(provider, fake_clock, capacity=1)

        client.invoke(self.request, acquire_timeout=0.5)
        assert provider.calls[0][1] is None

        with pytest.raises(RateLimitTimeout):
            client.invoke(self.request, acquire_timeout=0.5)
        assert len(provider.calls) == 1
