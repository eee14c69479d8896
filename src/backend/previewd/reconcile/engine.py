"""Reconcile engine: moves one Environment one step closer to its desired state.

reconcile(env_id) is idempotent and safe to call at any time; the dispatcher
guarantees it never runs twice concurrently for the same id. A tick:

  1. loads the record (gone → terminal)
  2. routes by phase: deletion / admission / Failed recovery / converge
  3. converges namespace → quota → policies → ingress → descriptor, then
     reads child status and live pod requests for the cost snapshot
  4. writes observed status last, re-reading the record on a version conflict
  5. reports the commit status if the phase changed (best effort)

Cluster writes happen in step 3 only; the Environment row is written once per
tick in step 4. A tick that times out writes nothing, so status can never
claim Ready for work that did not finish.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime

from previewd.config import settings
from previewd.cost.estimator import CostEstimator, format_cost
from previewd.database import SessionFactory, session_scope
from previewd.durations import format_duration, parse_duration
from previewd.errors import (
    PreviewdError,
    ReconcileError,
    StaleVersionError,
    TransientError,
    ValidationError,
)
from previewd.github.client import CommitState, RepositoryClient, detect_services
from previewd.gitops.descriptor import DescriptorGenerator, child_name, descriptor_name
from previewd.ingress.manager import IngressManager, ingress_host, service_path
from previewd.isolation.manager import IsolationManager, generate_namespace_name, isolation_flag
from previewd.kube.store import POD, ClusterStore
from previewd.models.environment import Environment
from previewd.reconcile.phases import ACTIVE_PHASES, Phase, phase_conditions, transition
from previewd.repositories.environment_repo import EnvironmentRepository

log = logging.getLogger(__name__)

_STATUS_WRITE_ATTEMPTS = 3

# Columns the engine owns. Everything else on the row belongs to the API.
OBSERVED_FIELDS = (
    "phase",
    "finalizer",
    "url",
    "namespace_name",
    "service_statuses",
    "conditions",
    "cost_estimate",
    "actual_cost",
    "created_at",
    "expires_at",
    "last_synced_at",
    "observed_generation",
    "applied_revision",
    "applied_services",
    "retry_count",
)

_COMMIT_STATES: dict[Phase, tuple[CommitState, str]] = {
    Phase.CREATING: (CommitState.PENDING, "Preview environment is being created"),
    Phase.UPDATING: (CommitState.PENDING, "Preview environment is being updated"),
    Phase.READY: (CommitState.SUCCESS, "Preview environment is ready"),
    Phase.FAILED: (CommitState.FAILURE, "Preview environment failed"),
}


@dataclass(frozen=True)
class ReconcileResult:
    requeue_after: float | None = None
    removed: bool = False


def preview_url(pr_number: int) -> str:
    return f"https://{ingress_host(pr_number)}"


def service_url(base_url: str, service: str) -> str:
    return f"{base_url}{service_path(service)}"


def retry_delay(attempt: int) -> float:
    """Backoff before retry number `attempt` (1-based): base * 2^(n-1), capped."""
    delay = settings.RETRY_BASE_SECONDS * (2 ** max(attempt - 1, 0))
    return min(delay, settings.RETRY_MAX_SECONDS)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ReconcileEngine:
    def __init__(
        self,
        store: ClusterStore,
        isolation: IsolationManager,
        descriptors: DescriptorGenerator,
        estimator: CostEstimator,
        session_factory: SessionFactory | None = None,
        repo_client: RepositoryClient | None = None,
        clock: Callable[[], datetime] = _utcnow,
        ingress: IngressManager | None = None,
    ) -> None:
        self._store = store
        self._isolation = isolation
        self._ingress = ingress or IngressManager(store)
        self._descriptors = descriptors
        self._estimator = estimator
        self._session_factory = session_factory
        self._repo_client = repo_client
        self._clock = clock
        # (env id, head sha) → services detected from that revision's diff
        self._detected: dict[tuple[str, str], list[str]] = {}

    # ── entry point ────────────────────────────────────────────────────────

    async def reconcile(self, env_id: str, timeout: float | None = None) -> ReconcileResult:
        deadline = settings.RECONCILE_TIMEOUT_SECONDS if timeout is None else timeout
        try:
            async with asyncio.timeout(deadline):
                return await self._reconcile(str(env_id))
        except TimeoutError:
            log.warning("Reconcile of %s exceeded %.1fs; requeueing", env_id, deadline)
            return ReconcileResult(requeue_after=retry_delay(1))

    async def _reconcile(self, env_id: str) -> ReconcileResult:
        env = await self._load(env_id)
        if env is None:
            self._forget(env_id)
            return ReconcileResult(removed=True)

        now = self._clock()
        start = Phase(env.phase)

        if start is Phase.DELETING or env.deletion_requested_at is not None or _expired(env, now):
            return await self._delete(env, start, now)

        if start is Phase.PENDING:
            return await self._admit(env, start, now)

        if start is Phase.FAILED:
            if env.generation == env.observed_generation:
                return ReconcileResult()
            target = Phase.UPDATING if env.applied_revision else Phase.CREATING
            log.info(
                "Environment %s changed (generation %d); leaving Failed for %s",
                env.name, env.generation, target.value,
            )
            self._set_phase(env, target)
            env.retry_count = 0

        return await self._converge(env, start, now)

    # ── admission ──────────────────────────────────────────────────────────

    async def _admit(self, env: Environment, start: Phase, now: datetime) -> ReconcileResult:
        env.finalizer = True
        env.created_at = env.created_at or now
        env.namespace_name = generate_namespace_name(env.pr_number, env.repository)
        env.url = preview_url(env.pr_number)
        try:
            ttl = parse_duration(env.ttl)
        except ValidationError as exc:
            return await self._fail(env, start, now, "InvalidTTL", exc.message)

        env.expires_at = env.created_at + ttl
        self._set_phase(env, Phase.CREATING)
        env.conditions = phase_conditions(
            env.conditions, Phase.CREATING, now, "Admitted", "Preview environment admitted"
        )
        log.info("Admitted %s, expires at %s", env.name, env.expires_at.isoformat())
        await self._finish(env, start)
        return ReconcileResult(requeue_after=0)

    # ── converge ───────────────────────────────────────────────────────────

    async def _converge(self, env: Environment, start: Phase, now: datetime) -> ReconcileResult:
        try:
            async with self._guard(env, "ttl", "InvalidTTL"):
                ttl = parse_duration(env.ttl)
            env.expires_at = (env.created_at or now) + ttl
            if _expired(env, now):
                return await self._delete(env, start, now)

            services = await self._resolve_services(env)
            if Phase(env.phase) is Phase.READY and (
                env.head_sha != env.applied_revision
                or services != list(env.applied_services or [])
            ):
                log.info("Environment %s drifted from last applied state; updating", env.name)
                self._set_phase(env, Phase.UPDATING)

            async with self._guard(env, "namespace", "InvalidNamespaceName"):
                namespace = await self._isolation.ensure_namespace(env)
            env.namespace_name = namespace

            async with self._guard(env, "resource quota", "InvalidResourceOverride"):
                if isolation_flag(env, "resource_quota", True):
                    await self._isolation.ensure_resource_quota(env, namespace)
                else:
                    await self._isolation.remove_resource_quota(namespace)

            async with self._guard(env, "network policies", "InvalidNetworkPolicy"):
                if isolation_flag(env, "network_policies", True):
                    await self._isolation.ensure_network_policies(env, namespace)
                else:
                    await self._isolation.remove_network_policies(namespace)

            async with self._guard(env, "ingress", "InvalidIngress"):
                await self._ingress.ensure_ingress(env, namespace, services)

            async with self._guard(env, "descriptor", "InvalidDescriptor"):
                await self._descriptors.ensure_descriptor(env, namespace, services)

            async with self._guard(env, "child status", "TransientError"):
                statuses = [
                    (service, await self._descriptors.get_child_status(
                        child_name(env.pr_number, service)))
                    for service in services
                ]

            async with self._guard(env, "cost estimate", "TransientError"):
                pods = await self._store.list(POD, namespace)
                estimate = self._estimator.estimate_environment_cost(
                    pods, ttl, settings.USE_SPOT_PRICING
                )
        except ReconcileError as exc:
            if exc.permanent:
                return await self._fail(env, start, now, exc.reason, exc.message)
            return await self._retry(env, start, now, exc)

        env.url = preview_url(env.pr_number)
        env.service_statuses = [
            {
                "name": service,
                "ready": status.ready,
                "health": status.health,
                "syncStatus": status.sync_status,
                "url": service_url(env.url, service),
            }
            for service, status in statuses
        ]
        env.cost_estimate = estimate.to_status()
        env.retry_count = 0
        env.last_synced_at = now
        env.observed_generation = env.generation

        waiting = [service for service, status in statuses if not status.ready]
        phase = Phase(env.phase)
        if not waiting:
            if phase in ACTIVE_PHASES:
                self._set_phase(env, Phase.READY)
                log.info("Environment %s is ready at %s", env.name, env.url)
            env.applied_revision = env.head_sha
            env.applied_services = list(services)
            env.conditions = phase_conditions(
                env.conditions, Phase.READY, now, "AllServicesReady",
                f"{len(services)} service(s) healthy and synced",
            )
            requeue = self._ready_requeue(env, now)
        elif phase is Phase.READY:
            env.conditions = phase_conditions(
                env.conditions, Phase.READY, now, "ServiceUnhealthy",
                f"not ready: {', '.join(waiting)}", degraded=True,
            )
            requeue = settings.POLL_INTERVAL_SECONDS
        else:
            env.conditions = phase_conditions(
                env.conditions, phase, now, "WaitingForServices",
                f"waiting for {', '.join(waiting)}",
            )
            requeue = settings.POLL_INTERVAL_SECONDS

        await self._finish(env, start)
        return ReconcileResult(requeue_after=requeue)

    def _ready_requeue(self, env: Environment, now: datetime) -> float:
        requeue = settings.READY_RESYNC_SECONDS
        if env.expires_at is not None and not env.do_not_expire:
            requeue = min(requeue, max((env.expires_at - now).total_seconds(), 0.0))
        return requeue

    async def _resolve_services(self, env: Environment) -> list[str]:
        services = list(env.services or [])
        if self._repo_client is not None and not services:
            services = await self._detect_services(env)
        if not services:
            raise ReconcileError(
                "no services requested and none detected in the PR diff",
                resource="services",
                environment=env.name,
                reason="NoServices",
                permanent=True,
            )
        return services

    async def _detect_services(self, env: Environment) -> list[str]:
        key = (str(env.id), env.head_sha)
        if key in self._detected:
            return self._detected[key]
        try:
            files = await self._repo_client.fetch_diff(env.repository, env.pr_number)
        except Exception as exc:
            # Not cached, so the next tick fetches again.
            if env.applied_services:
                log.warning(
                    "Diff fetch for %s failed; keeping last applied services: %s", env.name, exc
                )
                return list(env.applied_services)
            raise ReconcileError(
                f"could not fetch the PR diff: {exc}",
                resource="services",
                environment=env.name,
                reason="DiffUnavailable",
                permanent=False,
            ) from exc
        detected = detect_services(files)
        self._detected[key] = detected
        log.info("Detected services for %s at %s: %s", env.name, env.head_sha[:7], detected)
        return detected

    # ── failure handling ───────────────────────────────────────────────────

    @asynccontextmanager
    async def _guard(self, env: Environment, resource: str, reason: str) -> AsyncIterator[None]:
        """Wrap one step's errors as ReconcileError; ValidationError is permanent."""
        try:
            yield
        except ReconcileError:
            raise
        except ValidationError as exc:
            raise ReconcileError(
                exc.message, resource=resource, environment=env.name,
                reason=reason, permanent=True,
            ) from exc
        except PreviewdError as exc:
            raise ReconcileError(
                exc.message or type(exc).__name__, resource=resource, environment=env.name,
                reason="TransientError", permanent=False,
            ) from exc
        except Exception as exc:
            log.exception("Unexpected error reconciling %s of %s", resource, env.name)
            raise ReconcileError(
                str(exc) or type(exc).__name__, resource=resource, environment=env.name,
                reason="InternalError", permanent=False,
            ) from exc

    async def _retry(
        self, env: Environment, start: Phase, now: datetime, exc: ReconcileError
    ) -> ReconcileResult:
        env.retry_count = (env.retry_count or 0) + 1
        if env.retry_count > settings.RETRY_LIMIT:
            return await self._fail(
                env, start, now, "RetryLimitExceeded",
                f"gave up after {settings.RETRY_LIMIT} retries: {exc.message}",
            )
        delay = retry_delay(env.retry_count)
        log.warning(
            "Transient error on %s (retry %d/%d in %.0fs): %s",
            env.name, env.retry_count, settings.RETRY_LIMIT, delay, exc.message,
        )
        env.conditions = phase_conditions(
            env.conditions, Phase(env.phase), now, exc.reason, exc.message, degraded=True
        )
        await self._finish(env, start)
        return ReconcileResult(requeue_after=delay)

    async def _fail(
        self, env: Environment, start: Phase, now: datetime, reason: str, message: str
    ) -> ReconcileResult:
        self._set_phase(env, Phase.FAILED)
        env.retry_count = 0
        env.observed_generation = env.generation
        env.last_synced_at = now
        env.conditions = phase_conditions(env.conditions, Phase.FAILED, now, reason, message)
        log.warning("Environment %s failed (%s): %s", env.name, reason, message)
        await self._finish(env, start, description=message)
        return ReconcileResult()

    # ── deletion ───────────────────────────────────────────────────────────

    async def _delete(self, env: Environment, start: Phase, now: datetime) -> ReconcileResult:
        if Phase(env.phase) is not Phase.DELETING:
            self._set_phase(env, Phase.DELETING)
            log.info("Deleting preview environment %s", env.name)
        if env.deletion_requested_at is None:
            env.deletion_requested_at = now

        if not env.finalizer:
            # Never admitted, so nothing was created in the cluster.
            await self._remove_record(env)
            return ReconcileResult(removed=True)

        await self._record_actual_cost(env, now)
        try:
            async with self._guard(env, "descriptor", "DeleteFailed"):
                await self._descriptors.delete_descriptor(
                    descriptor_name(env.pr_number),
                    self._descriptors.argocd_namespace,
                    owner_uid=str(env.id),
                )
            async with self._guard(env, "namespace", "DeleteFailed"):
                await self._isolation.cleanup(env)
            async with self._guard(env, "removal check", "DeleteFailed"):
                removed = (
                    await self._descriptors.descriptor_removed(env)
                    and await self._isolation.namespace_removed(env)
                )
        except ReconcileError as exc:
            # Deleting has no way back; keep retrying at the capped backoff.
            env.retry_count = (env.retry_count or 0) + 1
            delay = retry_delay(env.retry_count)
            log.warning("Teardown of %s failed, retrying in %.0fs: %s", env.name, delay, exc.message)
            env.conditions = phase_conditions(
                env.conditions, Phase.DELETING, now, exc.reason, exc.message, degraded=True
            )
            await self._finish(env, start)
            return ReconcileResult(requeue_after=delay)

        if not removed:
            env.conditions = phase_conditions(
                env.conditions, Phase.DELETING, now, "WaitingForRemoval",
                "waiting for the namespace and descriptor to disappear",
            )
            await self._finish(env, start)
            return ReconcileResult(requeue_after=settings.DELETE_POLL_SECONDS)

        await self._remove_record(env)
        log.info("Preview environment %s removed", env.name)
        return ReconcileResult(removed=True)

    async def _record_actual_cost(self, env: Environment, now: datetime) -> None:
        if env.actual_cost is not None or not env.namespace_name or env.created_at is None:
            return
        try:
            pods = await self._store.list(POD, env.namespace_name)
        except PreviewdError as exc:
            log.warning("Could not read pods for the final cost of %s: %s", env.name, exc.message)
            return
        duration = now - env.created_at
        total = self._estimator.track_actual_cost(
            env.namespace_name, pods, duration, settings.USE_SPOT_PRICING
        )
        currency = self._estimator.get_config().currency
        env.actual_cost = {
            "currency": currency,
            "totalCost": format_cost(total),
            "duration": format_duration(duration),
        }
        log.info(
            "Environment %s ran for %s; actual cost %s %s",
            env.name, format_duration(duration), format_cost(total), currency,
        )

    # ── persistence ────────────────────────────────────────────────────────

    async def _load(self, env_id: str) -> Environment | None:
        async with session_scope(self._session_factory) as session:
            return await EnvironmentRepository(session).find_by_id(env_id)

    async def _finish(self, env: Environment, start: Phase, description: str = "") -> None:
        await self._write_status(env)
        final = Phase(env.phase)
        if final != start:
            await self._report(env, final, description)

    async def _write_status(self, env: Environment) -> None:
        """Copy observed fields onto a freshly read row; re-read on conflict."""
        for attempt in range(1, _STATUS_WRITE_ATTEMPTS + 1):
            try:
                async with session_scope(self._session_factory) as session:
                    repo = EnvironmentRepository(session)
                    fresh = await repo.find_by_id(env.id)
                    if fresh is None:
                        return
                    if fresh is not env:
                        for field in OBSERVED_FIELDS:
                            setattr(fresh, field, getattr(env, field))
                        if fresh.deletion_requested_at is None:
                            fresh.deletion_requested_at = env.deletion_requested_at
                    await repo.flush()
                return
            except StaleVersionError:
                log.debug("Status write for %s conflicted (attempt %d)", env.name, attempt)
        raise TransientError(f"{env.name}: status write kept conflicting")

    async def _remove_record(self, env: Environment) -> None:
        for attempt in range(1, _STATUS_WRITE_ATTEMPTS + 1):
            try:
                async with session_scope(self._session_factory) as session:
                    repo = EnvironmentRepository(session)
                    fresh = await repo.find_by_id(env.id)
                    if fresh is not None:
                        await repo.delete(fresh)
                self._forget(str(env.id))
                return
            except StaleVersionError:
                log.debug("Removing %s conflicted (attempt %d)", env.name, attempt)
        raise TransientError(f"{env.name}: record removal kept conflicting")

    # ── helpers ────────────────────────────────────────────────────────────

    @staticmethod
    def _set_phase(env: Environment, target: Phase) -> None:
        env.phase = transition(Phase(env.phase), target).value

    async def _report(self, env: Environment, phase: Phase, description: str) -> None:
        if self._repo_client is None or phase not in _COMMIT_STATES:
            return
        state, default_description = _COMMIT_STATES[phase]
        try:
            await self._repo_client.update_commit_status(
                env.repository, env.head_sha, state, env.url or "",
                description or default_description,
            )
        except Exception as exc:
            log.warning("Could not report commit status for %s: %s", env.name, exc)

    def _forget(self, env_id: str) -> None:
        for key in [k for k in self._detected if k[0] == env_id]:
            del self._detected[key]


def _expired(env: Environment, now: datetime) -> bool:
    if env.expires_at is None or env.do_not_expire:
        return False
    return now >= env.expires_at
