"""Reconcile dispatcher: decides when the engine runs, never what it does.

  - at most one reconcile in flight per Environment id; triggers that arrive
    while one is running collapse into a single follow-up run
  - requeue-after is a loop timer; an earlier trigger replaces a later timer
  - a global semaphore bounds how many reconciles run at once

API writes call enqueue() directly; APScheduler calls resync() to sweep
every record in case a trigger was lost.
"""

import asyncio
import logging

from previewd.config import settings
from previewd.database import SessionFactory, session_scope
from previewd.reconcile.engine import ReconcileEngine, ReconcileResult, retry_delay
from previewd.repositories.environment_repo import EnvironmentRepository

log = logging.getLogger(__name__)


class ReconcileDispatcher:
    def __init__(
        self,
        engine: ReconcileEngine,
        session_factory: SessionFactory | None = None,
        max_concurrent: int | None = None,
    ) -> None:
        self._engine = engine
        self._session_factory = session_factory
        self._semaphore = asyncio.Semaphore(max_concurrent or settings.MAX_CONCURRENT_RECONCILES)
        self._running: dict[str, asyncio.Task] = {}
        self._dirty: set[str] = set()
        self._timers: dict[str, tuple[float, asyncio.TimerHandle]] = {}
        self._closed = False

    def enqueue(self, env_id: str, delay: float = 0.0) -> None:
        """Schedule a reconcile of env_id, now or after delay seconds."""
        if self._closed:
            return
        env_id = str(env_id)
        loop = asyncio.get_running_loop()

        if delay > 0:
            due = loop.time() + delay
            pending = self._timers.get(env_id)
            if pending is not None:
                if pending[0] <= due:
                    return
                pending[1].cancel()
            self._timers[env_id] = (due, loop.call_later(delay, self._fire, env_id))
            return

        self._cancel_timer(env_id)
        if env_id in self._running:
            self._dirty.add(env_id)
            return
        self._running[env_id] = asyncio.create_task(self._run(env_id), name=f"reconcile-{env_id}")

    def is_running(self, env_id: str) -> bool:
        return str(env_id) in self._running

    def pending_delay(self, env_id: str) -> float | None:
        """Seconds until the timer for env_id fires, or None if there is none."""
        pending = self._timers.get(str(env_id))
        if pending is None:
            return None
        return max(pending[0] - asyncio.get_running_loop().time(), 0.0)

    async def resync(self) -> int:
        async with session_scope(self._session_factory) as session:
            ids = await EnvironmentRepository(session).list_ids()
        for env_id in ids:
            self.enqueue(env_id)
        log.debug("Resync enqueued %d environment(s)", len(ids))
        return len(ids)

    async def drain(self) -> None:
        """Wait until no reconcile is running. Pending timers are left alone."""
        while self._running:
            await asyncio.gather(*list(self._running.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        self._closed = True
        for _, handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        tasks = list(self._running.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ── internals ──────────────────────────────────────────────────────────

    def _fire(self, env_id: str) -> None:
        self._timers.pop(env_id, None)
        self.enqueue(env_id)

    def _cancel_timer(self, env_id: str) -> None:
        pending = self._timers.pop(env_id, None)
        if pending is not None:
            pending[1].cancel()

    async def _run(self, env_id: str) -> None:
        result = ReconcileResult()
        try:
            while True:
                self._dirty.discard(env_id)
                async with self._semaphore:
                    try:
                        result = await self._engine.reconcile(env_id)
                    except Exception:
                        log.exception("Reconcile of %s raised", env_id)
                        result = ReconcileResult(requeue_after=retry_delay(1))
                if env_id not in self._dirty:
                    break
        finally:
            self._running.pop(env_id, None)

        if not result.removed and result.requeue_after is not None:
            self.enqueue(env_id, result.requeue_after)
