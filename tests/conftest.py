"""Shared test fixtures for Tickwork."""

import asyncio
from typing import Any

import pytest

from tickwork.core.bus import EventBus
from tickwork.core.config import TickworkConfig
from tickwork.scheduler.executors import CancellationToken, ExecutionResult, Executor
from tickwork.scheduler.store import InMemoryRunStore
from tickwork.scheduler.tracker import RunTracker


class FakeClock:
    """Manually advanced clock, injected wherever time.time would be."""

    def __init__(self, now: float = 1_790_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeExecutor(Executor):
    """
    Controllable executor.

    By default returns success immediately. ``gate`` makes every call
    block until the gate is set; ``raises`` / ``result`` control the
    outcome.
    """

    def __init__(
        self,
        result: ExecutionResult | None = None,
        raises: Exception | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.result = result or ExecutionResult.ok("done")
        self.raises = raises
        self.gate = gate
        self.calls: list[Any] = []
        self.tokens: list[CancellationToken] = []

    async def execute(self, executor_ref: Any, token: CancellationToken) -> ExecutionResult:
        self.calls.append(executor_ref)
        self.tokens.append(token)
        if self.gate is not None:
            await self.gate.wait()
        if self.raises is not None:
            raise self.raises
        return self.result


@pytest.fixture
def config():
    """Create a default config without loading from disk."""
    return TickworkConfig()


@pytest.fixture
def bus():
    """Create a fresh event bus."""
    return EventBus()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def run_store():
    return InMemoryRunStore()


@pytest.fixture
def tracker(run_store):
    return RunTracker(run_store)


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def make_executor():
    """FakeExecutor factory, for tests that need a gate or a failure."""
    return FakeExecutor
