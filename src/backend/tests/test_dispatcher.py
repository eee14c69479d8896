"""Tests for the reconcile dispatcher (single flight, timers, concurrency)."""

import asyncio
from unittest.mock import patch

import pytest

from conftest import build_environment
from previewd.reconcile.dispatcher import ReconcileDispatcher
from previewd.reconcile.engine import ReconcileResult


class FakeEngine:
    """Records calls; clear `gate` to hold reconciles in flight."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.gate = asyncio.Event()
        self.gate.set()
        self.result = ReconcileResult()
        self.error: Exception | None = None
        self.active = 0
        self.peak = 0

    async def reconcile(self, env_id: str) -> ReconcileResult:
        self.calls.append(env_id)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await self.gate.wait()
            if self.error is not None:
                raise self.error
            return self.result
        finally:
            self.active -= 1


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
async def dispatcher(engine, session_factory):
    d = ReconcileDispatcher(engine, session_factory=session_factory, max_concurrent=2)
    yield d
    await d.shutdown()


# ---------------------------------------------------------------------------
# Single flight
# ---------------------------------------------------------------------------


class TestSingleFlight:
    async def test_runs_once(self, dispatcher, engine):
        dispatcher.enqueue("a")
        await dispatcher.drain()
        assert engine.calls == ["a"]
        assert not dispatcher.is_running("a")

    async def test_triggers_during_a_run_coalesce(self, dispatcher, engine):
        engine.gate.clear()
        dispatcher.enqueue("a")
        await asyncio.sleep(0.01)
        assert dispatcher.is_running("a")

        dispatcher.enqueue("a")
        dispatcher.enqueue("a")
        dispatcher.enqueue("a")
        assert engine.active == 1

        engine.gate.set()
        await dispatcher.drain()
        assert engine.calls == ["a", "a"]

    async def test_concurrency_bounded(self, dispatcher, engine):
        engine.gate.clear()
        for env_id in ("a", "b", "c", "d"):
            dispatcher.enqueue(env_id)
        await asyncio.sleep(0.01)
        assert engine.active == 2

        engine.gate.set()
        await dispatcher.drain()
        assert sorted(engine.calls) == ["a", "b", "c", "d"]
        assert engine.peak == 2


# ---------------------------------------------------------------------------
# Timers
# ---------------------------------------------------------------------------


class TestTimers:
    async def test_earlier_trigger_wins(self, dispatcher):
        dispatcher.enqueue("a", 60)
        dispatcher.enqueue("a", 5)
        assert dispatcher.pending_delay("a") <= 5

        dispatcher.enqueue("a", 30)
        assert dispatcher.pending_delay("a") <= 5

    async def test_immediate_trigger_cancels_timer(self, dispatcher, engine):
        dispatcher.enqueue("a", 60)
        dispatcher.enqueue("a")
        assert dispatcher.pending_delay("a") is None
        await dispatcher.drain()
        assert engine.calls == ["a"]

    async def test_timer_fires(self, dispatcher, engine):
        dispatcher.enqueue("a", 0.01)
        await asyncio.sleep(0.05)
        await dispatcher.drain()
        assert engine.calls == ["a"]

    async def test_requeue_after_schedules_timer(self, dispatcher, engine):
        engine.result = ReconcileResult(requeue_after=60)
        dispatcher.enqueue("a")
        await dispatcher.drain()
        assert 59 < dispatcher.pending_delay("a") <= 60

    async def test_removed_environment_is_not_requeued(self, dispatcher, engine):
        engine.result = ReconcileResult(requeue_after=60, removed=True)
        dispatcher.enqueue("a")
        await dispatcher.drain()
        assert dispatcher.pending_delay("a") is None

    async def test_no_requeue_when_engine_returns_none(self, dispatcher, engine):
        dispatcher.enqueue("a")
        await dispatcher.drain()
        assert dispatcher.pending_delay("a") is None

    async def test_engine_exception_requeues_with_backoff(self, dispatcher, engine):
        engine.error = RuntimeError("boom")
        dispatcher.enqueue("a")
        await dispatcher.drain()
        assert 4 < dispatcher.pending_delay("a") <= 5


# ---------------------------------------------------------------------------
# Resync and shutdown
# ---------------------------------------------------------------------------


class TestResync:
    async def test_enqueues_every_record(self, dispatcher, engine, envs):
        first = envs.add(build_environment(pr_number=1))
        second = envs.add(build_environment(pr_number=2))

        with patch("previewd.reconcile.dispatcher.EnvironmentRepository", return_value=envs):
            count = await dispatcher.resync()
        await dispatcher.drain()

        assert count == 2
        assert sorted(engine.calls) == sorted([first.id, second.id])


class TestShutdown:
    async def test_cancels_timers_and_runs(self, engine, session_factory):
        d = ReconcileDispatcher(engine, session_factory=session_factory, max_concurrent=2)
        engine.gate.clear()
        d.enqueue("a")
        d.enqueue("b", 60)
        await asyncio.sleep(0.01)

        await d.shutdown()

        assert not d.is_running("a")
        assert d.pending_delay("b") is None

        d.enqueue("c")
        assert not d.is_running("c")
