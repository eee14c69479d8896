from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from conftest import build_environment
from previewd.cleanup.scheduler import CleanupScheduler
from previewd.models.environment import DO_NOT_EXPIRE_LABEL


@pytest.fixture
def dispatcher():
    return MagicMock()


@pytest.fixture
def scheduler(dispatcher, session_factory, clock, envs):
    with patch("previewd.cleanup.scheduler.EnvironmentRepository", return_value=envs):
        yield CleanupScheduler(dispatcher, session_factory=session_factory, clock=clock)


def _add(envs, clock, pr_number, expires_in, **overrides):
    expires_at = None if expires_in is None else clock.now + expires_in
    return envs.add(build_environment(pr_number=pr_number, expires_at=expires_at, **overrides))


class TestSweep:
    async def test_requests_deletion_of_expired(self, scheduler, dispatcher, envs, clock):
        expired = _add(envs, clock, 1, timedelta(minutes=-1))
        live = _add(envs, clock, 2, timedelta(hours=1))

        result = await scheduler.sweep()

        assert result == [expired.id]
        assert expired.deletion_requested_at == clock.now
        assert live.deletion_requested_at is None
        dispatcher.enqueue.assert_called_once_with(expired.id)

    async def test_expiry_boundary_is_inclusive(self, scheduler, envs, clock):
        env = _add(envs, clock, 1, timedelta(0))
        assert await scheduler.sweep() == [env.id]

    async def test_skips_do_not_expire(self, scheduler, dispatcher, envs, clock):
        _add(envs, clock, 1, timedelta(hours=-1), labels={DO_NOT_EXPIRE_LABEL: "true"})

        assert await scheduler.sweep() == []
        dispatcher.enqueue.assert_not_called()

    async def test_skips_unadmitted_and_already_deleting(self, scheduler, envs, clock):
        _add(envs, clock, 1, None)
        _add(envs, clock, 2, timedelta(hours=-1), deletion_requested_at=clock.now)

        assert await scheduler.sweep() == []

    async def test_conflict_defers_to_next_sweep(self, scheduler, dispatcher, envs, clock):
        _add(envs, clock, 1, timedelta(hours=-1))
        envs.stale_writes = 1

        assert await scheduler.sweep() == []
        dispatcher.enqueue.assert_not_called()
