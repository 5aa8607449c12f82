"""
Shared test doubles: a simulated clock and a scripted image provider.
"""

import threading

import pytest

from coin_gate.providers.base import ProviderArtifact, ProviderResult


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 0.0):
        self._now = start
        self._lock = threading.Lock()
        self.sleeps = []

    def now(self) -> float:
        with self._lock:
            return self._now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self._now += max(0.0, seconds)

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += seconds


class FakeProvider:
    """Provider that replays a script of outcomes.

    Each script item is an exception to raise, a ProviderResult to return,
    or a callable taking the request. Once the script is exhausted every
    call succeeds with one PNG-like payload per requested sample.
    """

    name = "fake"

    def __init__(self, script=None):
        self.script = list(script or [])
        self.calls = []
        self._lock = threading.Lock()

    def generate(self, request, timeout=None):
        with self._lock:
            self.calls.append((request, timeout))
            outcome = self.script.pop(0) if self.script else None
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, ProviderResult):
            return outcome
        if callable(outcome):
            return outcome(request)
        return success_result(request.samples)


def success_result(count: int = 1) -> ProviderResult:
    return ProviderResult(artifacts=[
        ProviderArtifact(payload=b"\x89PNG fake image %d" % index, seed=1000 + index)
        for index in range(count)
    ])


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_provider():
    return FakeProvider()
