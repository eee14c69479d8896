"""Environment service: the API side of the Environment record.

The API only writes desired state (and the deletion request). Every change
that affects the cluster bumps `generation` and pokes the dispatcher; the
reconcile engine does the rest.

A write that loses the optimistic-concurrency race against the engine's
status write is retried on a freshly read row.
"""

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from previewd.auth.jwt import Claims
from previewd.auth.roles import assert_admin, assert_can_mutate
from previewd.errors import ConflictError, StaleVersionError
from previewd.models.environment import Environment
from previewd.reconcile.dispatcher import ReconcileDispatcher
from previewd.repositories.environment_repo import EnvironmentRepository
from previewd.schemas.environment import (
    EnvironmentCreateRequest,
    EnvironmentPatchRequest,
    EnvironmentResponse,
)

log = logging.getLogger(__name__)

_WRITE_ATTEMPTS = 3

# Columns a PATCH may set to null.
_NULLABLE_FIELDS = frozenset({"base_branch", "head_branch"})


def environment_name(repository: str, pr_number: int) -> str:
    return f"{repository.replace('/', '-')}-pr-{pr_number}".lower()


class EnvironmentService:
    def __init__(
        self,
        session: AsyncSession,
        dispatcher: ReconcileDispatcher | None = None,
    ) -> None:
        self.repo = EnvironmentRepository(session)
        self.session = session
        self._dispatcher = dispatcher

    async def create_environment(
        self, claims: Claims, body: EnvironmentCreateRequest
    ) -> EnvironmentResponse:
        assert_can_mutate(claims)

        async with self.session.begin():
            existing = await self.repo.get_by_identity(body.repository, body.pr_number)
            if existing is not None:
                raise ConflictError(
                    f"An environment for {body.repository} PR #{body.pr_number} already exists"
                )
            env = await self.repo.create(
                name=environment_name(body.repository, body.pr_number),
                repository=body.repository,
                pr_number=body.pr_number,
                head_sha=body.head_sha,
                base_branch=body.base_branch,
                head_branch=body.head_branch,
                services=list(body.services),
                ttl=body.ttl,
                resource_overrides=dict(body.resource_overrides),
                isolation=body.isolation.model_dump(),
                labels=dict(body.labels),
                generation=1,
                phase="Pending",
            )

        log.info("Environment %s requested by %s", env.name, claims.sub)
        self._enqueue(env.id)
        return EnvironmentResponse.model_validate(env)

    async def patch_environment(
        self, claims: Claims, env_id: str, body: EnvironmentPatchRequest
    ) -> EnvironmentResponse:
        assert_can_mutate(claims)
        changes = {}
        for field in body.model_fields_set:
            value = getattr(body, field)
            if value is None and field not in _NULLABLE_FIELDS:
                continue
            # Nested settings are replaced whole, with defaults filled in.
            changes[field] = value.model_dump() if isinstance(value, BaseModel) else value

        def apply(env: Environment) -> bool:
            if env.deletion_requested_at is not None:
                raise ConflictError(f"Environment '{env_id}' is being deleted")
            changed = False
            for field, value in changes.items():
                if getattr(env, field) != value:
                    setattr(env, field, value)
                    changed = True
            if changed:
                env.generation += 1
            return changed

        env, changed = await self._write(env_id, apply)
        if changed:
            log.info("Environment %s updated to generation %d", env.name, env.generation)
            self._enqueue(env.id)
        return EnvironmentResponse.model_validate(env)

    async def request_deletion(self, claims: Claims, env_id: str) -> EnvironmentResponse:
        assert_can_mutate(claims)

        def apply(env: Environment) -> bool:
            if env.deletion_requested_at is not None:
                return False
            env.deletion_requested_at = datetime.now(UTC)
            return True

        env, changed = await self._write(env_id, apply)
        if changed:
            log.info("Deletion of %s requested by %s", env.name, claims.sub)
        self._enqueue(env.id)
        return EnvironmentResponse.model_validate(env)

    async def request_reconcile(self, claims: Claims, env_id: str) -> EnvironmentResponse:
        assert_admin(claims)
        env = await self.repo.get_by_id(env_id)
        self._enqueue(env.id)
        return EnvironmentResponse.model_validate(env)

    async def get_environment(self, claims: Claims, env_id: str) -> EnvironmentResponse:
        env = await self.repo.get_by_id(env_id)
        return EnvironmentResponse.model_validate(env)

    async def list_environments(self, claims: Claims) -> list[EnvironmentResponse]:
        envs = await self.repo.list_all()
        return [EnvironmentResponse.model_validate(e) for e in envs]

    # ── internals ──────────────────────────────────────────────────────────

    async def _write(
        self, env_id: str, apply: Callable[[Environment], bool]
    ) -> tuple[Environment, bool]:
        for attempt in range(1, _WRITE_ATTEMPTS):
            try:
                return await self._write_once(env_id, apply)
            except StaleVersionError:
                log.debug("Write to environment %s conflicted (attempt %d)", env_id, attempt)
        return await self._write_once(env_id, apply)

    async def _write_once(
        self, env_id: str, apply: Callable[[Environment], bool]
    ) -> tuple[Environment, bool]:
        async with self.session.begin():
            env = await self.repo.get_by_id(env_id)
            changed = apply(env)
            await self.repo.flush()
        return env, changed

    def _enqueue(self, env_id: str) -> None:
        if self._dispatcher is not None:
            self._dispatcher.enqueue(str(env_id))
