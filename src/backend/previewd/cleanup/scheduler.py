"""TTL cleanup sweep.

sweep() is called by APScheduler on CLEANUP_INTERVAL_MINUTES. It only requests
deletion (stamps deletion_requested_at and enqueues); the reconcile engine's
Deleting path does the actual teardown.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from previewd.database import SessionFactory, session_scope
from previewd.errors import ConflictError
from previewd.reconcile.dispatcher import ReconcileDispatcher
from previewd.repositories.environment_repo import EnvironmentRepository

log = logging.getLogger(__name__)


class CleanupScheduler:
    def __init__(
        self,
        dispatcher: ReconcileDispatcher,
        session_factory: SessionFactory | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._dispatcher = dispatcher
        self._session_factory = session_factory
        self._clock = clock

    async def sweep(self) -> list[str]:
        """Request deletion of every expired Environment; returns their ids."""
        now = self._clock()
        expired: list[str] = []
        try:
            async with session_scope(self._session_factory) as session:
                repo = EnvironmentRepository(session)
                for env in await repo.list_all():
                    if env.expires_at is None or env.deletion_requested_at is not None:
                        continue
                    if env.do_not_expire:
                        log.debug("Skipping %s: marked do-not-expire", env.name)
                        continue
                    if env.expires_at > now:
                        continue
                    env.deletion_requested_at = now
                    expired.append(str(env.id))
                    log.info("Environment %s expired at %s", env.name, env.expires_at.isoformat())
                await repo.flush()
        except ConflictError:
            log.warning("Cleanup sweep raced with another writer; retrying next interval")
            return []

        for env_id in expired:
            self._dispatcher.enqueue(env_id)
        return expired
