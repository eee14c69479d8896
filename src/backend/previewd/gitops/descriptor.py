"""Argo CD ApplicationSet generator for preview environments.

One ApplicationSet per environment (preview-{N}) with a list generator that
has one element per requested service. Argo CD expands it into one
Application per service (preview-{N}-{service}), each pinned to the PR head
SHA and deployed into the environment's namespace.

The ApplicationSet lives in the Argo CD namespace, so ownership is recorded
with the owner annotations rather than an owner reference; only the reconcile
engine's deletion path acts on them.

Convergence of the Applications is Argo CD's job. This module only reads
their health/sync status; it never waits for it.
"""

import logging
from dataclasses import dataclass

from previewd.config import settings
from previewd.errors import NotFoundError
from previewd.kube import labels
from previewd.kube.store import (
    APPLICATION,
    APPLICATION_SET,
    ApplyResult,
    ClusterStore,
    create_or_update,
    delete_if_present,
    set_metadata,
)
from previewd.models.environment import Environment

log = logging.getLogger(__name__)

HEALTH_HEALTHY = "Healthy"
HEALTH_MISSING = "Missing"
SYNC_SYNCED = "Synced"
SYNC_UNKNOWN = "Unknown"

RETRY_LIMIT = 5
RETRY_BACKOFF = {"duration": "5s", "factor": 2, "maxDuration": "3m"}

# Spec keys the generator owns; anything else on a live ApplicationSet is kept.
_OWNED_SPEC_KEYS = ("goTemplate", "goTemplateOptions", "generators", "template", "syncPolicy")


@dataclass(frozen=True)
class ChildStatus:
    health: str
    sync_status: str
    message: str = ""

    @property
    def ready(self) -> bool:
        return self.health == HEALTH_HEALTHY and self.sync_status == SYNC_SYNCED


def descriptor_name(pr_number: int) -> str:
    return f"preview-{pr_number}"


def child_name(pr_number: int, service: str) -> str:
    return f"preview-{pr_number}-{service}"


class DescriptorGenerator:
    def __init__(
        self,
        store: ClusterStore,
        repo_url: str | None = None,
        argocd_namespace: str | None = None,
        project: str | None = None,
        destination_server: str | None = None,
    ) -> None:
        self._store = store
        self.repo_url = repo_url or settings.GITOPS_REPO_URL
        self.argocd_namespace = argocd_namespace or settings.ARGOCD_NAMESPACE
        self.project = project or settings.ARGOCD_PROJECT
        self.destination_server = destination_server or settings.GITOPS_DESTINATION_SERVER

    # ── manifest ───────────────────────────────────────────────────────────

    def build(
        self, env: Environment, namespace: str, services: list[str] | None = None
    ) -> dict:
        """Return the desired ApplicationSet manifest for env.

        services defaults to the environment's requested list; the engine
        passes the list it resolved from the PR diff instead.
        """
        pr = env.pr_number
        if services is None:
            services = list(env.services or [])
        child_labels = {
            **labels.base_labels(pr),
            labels.LABEL_SERVICE: "{{.service}}",
        }
        return {
            "apiVersion": APPLICATION_SET.api_version,
            "kind": APPLICATION_SET.kind,
            "metadata": {
                "name": descriptor_name(pr),
                "namespace": self.argocd_namespace,
                "labels": labels.base_labels(pr),
                "annotations": labels.owner_annotations(env),
            },
            "spec": {
                "goTemplate": True,
                "goTemplateOptions": ["missingkey=error"],
                "generators": [
                    {"list": {"elements": [{"service": s} for s in services]}}
                ],
                "template": {
                    "metadata": {
                        "name": f"preview-{pr}-{{{{.service}}}}",
                        "labels": child_labels,
                    },
                    "spec": {
                        "project": self.project,
                        "source": {
                            "repoURL": self.repo_url,
                            "path": "services/{{.service}}",
                            "targetRevision": env.head_sha,
                            "kustomize": {
                                "namePrefix": f"pr-{pr}-",
                                "namespace": namespace,
                                "commonLabels": child_labels,
                            },
                        },
                        "destination": {
                            "server": self.destination_server,
                            "namespace": namespace,
                        },
                        "syncPolicy": {
                            "automated": {"prune": True, "selfHeal": True},
                            "syncOptions": ["CreateNamespace=false", "PruneLast=true"],
                            "retry": {"limit": RETRY_LIMIT, "backoff": dict(RETRY_BACKOFF)},
                        },
                    },
                },
                "syncPolicy": {"preserveResourcesOnDeletion": False},
            },
        }

    # ── convergence ────────────────────────────────────────────────────────

    async def ensure_descriptor(
        self, env: Environment, namespace: str, services: list[str] | None = None
    ) -> ApplyResult:
        if not namespace:
            raise ValueError("namespace must not be empty")
        desired = self.build(env, namespace, services)
        name = descriptor_name(env.pr_number)

        def mutate(body: dict) -> None:
            # preview-{N} is shared by PR N of every repository.
            labels.ensure_owned(body, env, f"ApplicationSet {name}")
            meta = desired["metadata"]
            set_metadata(body, meta["labels"], meta["annotations"])
            spec = body.setdefault("spec", {})
            for key in _OWNED_SPEC_KEYS:
                spec[key] = desired["spec"][key]

        return await create_or_update(
            self._store,
            APPLICATION_SET,
            name,
            self.argocd_namespace,
            mutate,
        )

    async def delete_descriptor(
        self, name: str, namespace: str, owner_uid: str | None = None
    ) -> None:
        """Delete an ApplicationSet; absence is success.

        With owner_uid, a descriptor recorded as belonging to a different
        environment is left alone.
        """
        if owner_uid is not None:
            try:
                current = await self._store.get(APPLICATION_SET, name, namespace)
            except NotFoundError:
                return
            if not labels.owned_by(current, owner_uid):
                log.warning("ApplicationSet %s/%s has another owner; not deleting", namespace, name)
                return
        await delete_if_present(self._store, APPLICATION_SET, name, namespace)

    async def descriptor_removed(self, env: Environment) -> bool:
        try:
            current = await self._store.get(
                APPLICATION_SET, descriptor_name(env.pr_number), self.argocd_namespace
            )
        except NotFoundError:
            return True
        return not labels.owned_by(current, env.id)

    # ── status ─────────────────────────────────────────────────────────────

    async def get_child_status(self, name: str, namespace: str | None = None) -> ChildStatus:
        try:
            app = await self._store.get(APPLICATION, name, namespace or self.argocd_namespace)
        except NotFoundError:
            return ChildStatus(health=HEALTH_MISSING, sync_status=SYNC_UNKNOWN,
                               message="Application not generated yet")
        status = app.get("status") or {}
        health = status.get("health") or {}
        sync = status.get("sync") or {}
        return ChildStatus(
            health=health.get("status") or HEALTH_MISSING,
            sync_status=sync.get("status") or SYNC_UNKNOWN,
            message=health.get("message") or "",
        )
