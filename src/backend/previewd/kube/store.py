"""Cluster store: async access to the Kubernetes API for the records previewd owns.

ClusterStore ABC defines the interface; KubernetesClusterStore is the real
implementation built on the official client's dynamic API. The client is
blocking, so every call runs in a worker thread.

create_or_update() is the convergent apply used by every manager:
read-current, mutate a copy toward desired, write only if something changed,
and on a version conflict re-read and try again.

Tests inject an in-memory store (see tests/conftest.py).
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import urllib3
from kubernetes import config as kube_config
from kubernetes.client import ApiClient
from kubernetes.client.rest import ApiException
from kubernetes.dynamic import DynamicClient
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt

from previewd.errors import ConflictError, NotFoundError, TransientError, ValidationError

log = logging.getLogger(__name__)

_APPLY_ATTEMPTS = 3


@dataclass(frozen=True)
class ResourceKind:
    api_version: str
    kind: str
    namespaced: bool = True


NAMESPACE = ResourceKind("v1", "Namespace", namespaced=False)
RESOURCE_QUOTA = ResourceKind("v1", "ResourceQuota")
POD = ResourceKind("v1", "Pod")
NETWORK_POLICY = ResourceKind("networking.k8s.io/v1", "NetworkPolicy")
INGRESS = ResourceKind("networking.k8s.io/v1", "Ingress")
APPLICATION_SET = ResourceKind("argoproj.io/v1alpha1", "ApplicationSet")
APPLICATION = ResourceKind("argoproj.io/v1alpha1", "Application")


class ApplyResult(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


def _describe(kind: ResourceKind, name: str, namespace: str | None) -> str:
    return f"{kind.kind} {namespace}/{name}" if namespace else f"{kind.kind} {name}"


class ClusterStore(ABC):
    @abstractmethod
    async def get(self, kind: ResourceKind, name: str, namespace: str | None = None) -> dict:
        """Return the manifest, or raise NotFoundError."""

    @abstractmethod
    async def create(self, kind: ResourceKind, body: dict) -> dict: ...

    @abstractmethod
    async def replace(self, kind: ResourceKind, body: dict) -> dict:
        """Write body; raises ConflictError if metadata.resourceVersion is stale."""

    @abstractmethod
    async def delete(self, kind: ResourceKind, name: str, namespace: str | None = None) -> None:
        """Delete the record, or raise NotFoundError."""

    @abstractmethod
    async def list(
        self,
        kind: ResourceKind,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict]: ...


class KubernetesClusterStore(ClusterStore):
    """ClusterStore over kubernetes.dynamic.DynamicClient."""

    def __init__(
        self,
        kubeconfig_path: str | None = None,
        context: str | None = None,
        in_cluster: bool = False,
    ) -> None:
        self._kubeconfig_path = kubeconfig_path
        self._context = context
        self._in_cluster = in_cluster
        self._dynamic: DynamicClient | None = None
        self._init_lock = asyncio.Lock()

    # ── internal helpers ───────────────────────────────────────────────────

    def _build_client(self) -> DynamicClient:
        if self._in_cluster:
            kube_config.load_incluster_config()
            return DynamicClient(ApiClient())
        api_client = kube_config.new_client_from_config(
            config_file=self._kubeconfig_path, context=self._context
        )
        return DynamicClient(api_client)

    async def _client(self) -> DynamicClient:
        # Discovery hits the API server, so build lazily on first use.
        async with self._init_lock:
            if self._dynamic is None:
                self._dynamic = await self._call(self._build_client, what="cluster discovery")
            return self._dynamic

    async def _resource(self, kind: ResourceKind):
        client = await self._client()
        return await self._call(
            client.resources.get, api_version=kind.api_version, kind=kind.kind, what=kind.kind
        )

    @staticmethod
    async def _call(fn: Callable, *args, what: str, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except ApiException as exc:
            raise _translate(exc, what) from exc
        except urllib3.exceptions.HTTPError as exc:
            raise TransientError(f"{what}: API server unreachable: {exc}") from exc

    # ── public interface ───────────────────────────────────────────────────

    async def get(self, kind: ResourceKind, name: str, namespace: str | None = None) -> dict:
        resource = await self._resource(kind)
        what = _describe(kind, name, namespace)
        obj = await self._call(resource.get, name=name, namespace=namespace, what=what)
        return obj.to_dict()

    async def create(self, kind: ResourceKind, body: dict) -> dict:
        resource = await self._resource(kind)
        meta = body.get("metadata", {})
        what = _describe(kind, meta.get("name", ""), meta.get("namespace"))
        obj = await self._call(
            resource.create, body=body, namespace=meta.get("namespace"), what=what
        )
        return obj.to_dict()

    async def replace(self, kind: ResourceKind, body: dict) -> dict:
        resource = await self._resource(kind)
        meta = body.get("metadata", {})
        what = _describe(kind, meta.get("name", ""), meta.get("namespace"))
        obj = await self._call(
            resource.replace, body=body, namespace=meta.get("namespace"), what=what
        )
        return obj.to_dict()

    async def delete(self, kind: ResourceKind, name: str, namespace: str | None = None) -> None:
        resource = await self._resource(kind)
        what = _describe(kind, name, namespace)
        await self._call(
            resource.delete,
            name=name,
            namespace=namespace,
            body={"propagationPolicy": "Background"},
            what=what,
        )

    async def list(
        self,
        kind: ResourceKind,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict]:
        resource = await self._resource(kind)
        result = await self._call(
            resource.get,
            namespace=namespace,
            label_selector=label_selector,
            what=f"{kind.kind} list",
        )
        return list(result.to_dict().get("items") or [])


def _translate(exc: ApiException, what: str) -> Exception:
    status = exc.status or 0
    detail = f"{what}: {exc.reason or 'API error'} (HTTP {status})"
    if status == 404:
        return NotFoundError(detail)
    if status == 409:
        return ConflictError(detail)
    if status in (400, 403, 422):
        return ValidationError(detail)
    return TransientError(detail)


# ── convergent apply ────────────────────────────────────────────────────────


async def create_or_update(
    store: ClusterStore,
    kind: ResourceKind,
    name: str,
    namespace: str | None,
    mutate: Callable[[dict], None],
) -> ApplyResult:
    """Converge one record: mutate() edits the manifest in place toward desired.

    Fields mutate() does not touch are preserved. A record that already matches
    is not written at all, so repeating the call with the same input is a no-op.
    """
    what = _describe(kind, name, namespace)
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(_APPLY_ATTEMPTS),
            retry=retry_if_exception_type(ConflictError),
            before_sleep=before_sleep_log(log, logging.DEBUG),
            reraise=True,
        ):
            with attempt:
                return await _apply_once(store, kind, name, namespace, mutate, what)
    except ConflictError as exc:
        raise TransientError(
            f"{what}: gave up after {_APPLY_ATTEMPTS} conflicting writes"
        ) from exc


async def _apply_once(
    store: ClusterStore,
    kind: ResourceKind,
    name: str,
    namespace: str | None,
    mutate: Callable[[dict], None],
    what: str,
) -> ApplyResult:
    # A ConflictError from create or replace means someone else wrote the
    # record after our read; the caller re-reads and tries again.
    try:
        current = await store.get(kind, name, namespace)
    except NotFoundError:
        body: dict = {
            "apiVersion": kind.api_version,
            "kind": kind.kind,
            "metadata": {"name": name},
        }
        if namespace is not None:
            body["metadata"]["namespace"] = namespace
        mutate(body)
        await store.create(kind, body)
        log.info("Created %s", what)
        return ApplyResult.CREATED

    desired = copy.deepcopy(current)
    mutate(desired)
    if desired == current:
        return ApplyResult.UNCHANGED
    await store.replace(kind, desired)
    log.info("Updated %s", what)
    return ApplyResult.UPDATED


async def delete_if_present(
    store: ClusterStore, kind: ResourceKind, name: str, namespace: str | None = None
) -> bool:
    """Delete a record; absence is success. Returns True if a delete was issued."""
    try:
        await store.delete(kind, name, namespace)
    except NotFoundError:
        return False
    log.info("Deleted %s", _describe(kind, name, namespace))
    return True


async def exists(
    store: ClusterStore, kind: ResourceKind, name: str, namespace: str | None = None
) -> bool:
    try:
        await store.get(kind, name, namespace)
    except NotFoundError:
        return False
    return True


def set_metadata(body: dict, labels: dict[str, str], annotations: dict[str, str] | None = None) -> None:
    """Merge labels/annotations into body's metadata, keeping foreign keys."""
    meta = body.setdefault("metadata", {})
    meta["labels"] = {**(meta.get("labels") or {}), **labels}
    if annotations:
        meta["annotations"] = {**(meta.get("annotations") or {}), **annotations}
