"""Isolation manager: one namespace, one quota and three network policies per
preview environment.

Namespace naming:
  preview-pr-{N}-{first 8 hex chars of sha256(repository)}

The hash keeps equal PR numbers from different repositories apart. Eight hex
characters is ~32 bits; widening it eats into the 63-char label budget, so
generate_namespace_name() and _validate_namespace_name() move together.

Every ensure_* call goes through create_or_update(), so repeating it with the
same Environment writes nothing.
"""

import hashlib
import logging
import re
from decimal import ROUND_CEILING

from kubernetes.utils import parse_quantity

from previewd.config import settings
from previewd.errors import NotFoundError, ValidationError
from previewd.kube import labels
from previewd.kube.store import (
    NAMESPACE,
    NETWORK_POLICY,
    RESOURCE_QUOTA,
    ApplyResult,
    ClusterStore,
    create_or_update,
    delete_if_present,
    set_metadata,
)
from previewd.models.environment import Environment

log = logging.getLogger(__name__)

QUOTA_NAME = "preview-quota"
DEFAULT_DENY_POLICY = "default-deny-all"
ALLOW_INGRESS_POLICY = "allow-ingress"
ALLOW_EGRESS_POLICY = "allow-egress"
POLICY_NAMES = (DEFAULT_DENY_POLICY, ALLOW_INGRESS_POLICY, ALLOW_EGRESS_POLICY)

_MAX_NAME_LENGTH = 63
_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")

# override key → ResourceQuota hard key, default
QUOTA_DEFAULTS: dict[str, tuple[str, str]] = {
    "cpu_requests": ("requests.cpu", "2"),
    "memory_requests": ("requests.memory", "4Gi"),
    "cpu_limits": ("limits.cpu", "4"),
    "memory_limits": ("limits.memory", "8Gi"),
    "persistent_volume_claims": ("persistentvolumeclaims", "0"),
    "load_balancers": ("services.loadbalancers", "0"),
}

_BINARY_SUFFIXES = (("Ei", 2**60), ("Pi", 2**50), ("Ti", 2**40), ("Gi", 2**30), ("Mi", 2**20), ("Ki", 2**10))
_DECIMAL_SUFFIXES = (("E", 10**18), ("P", 10**15), ("T", 10**12), ("G", 10**9), ("M", 10**6), ("k", 10**3))


def generate_namespace_name(pr_number: int, repository: str) -> str:
    digest = hashlib.sha256(repository.encode()).hexdigest()[:8]
    return f"preview-pr-{pr_number}-{digest}"


def _validate_namespace_name(name: str) -> None:
    if len(name) > _MAX_NAME_LENGTH:
        raise ValidationError(
            f"namespace name '{name}' is {len(name)} characters; the limit is {_MAX_NAME_LENGTH}"
        )
    if not _DNS_LABEL.match(name):
        raise ValidationError(f"namespace name '{name}' is not a valid DNS-1123 label")


def canonical_quantity(value: str) -> str:
    """The form the API server stores a quantity in: 2000m -> 2, 4096Mi -> 4Gi.

    Binary suffixes survive for whole values of at least 1Ki; everything else
    is decimal, rounded up to milli precision, with the largest exact suffix.
    """
    text = str(value).strip()
    amount = parse_quantity(text)
    if text.endswith("i") and amount == amount.to_integral_value() and abs(amount) >= 1024:
        number = int(amount)
        for suffix, factor in _BINARY_SUFFIXES:
            if number % factor == 0:
                return f"{number // factor}{suffix}"

    milli = int((amount * 1000).to_integral_value(rounding=ROUND_CEILING))
    if milli % 1000:
        return f"{milli}m"
    number = milli // 1000
    if number == 0:
        return "0"
    for suffix, factor in _DECIMAL_SUFFIXES:
        if number % factor == 0:
            return f"{number // factor}{suffix}"
    return str(number)


def quota_hard_limits(overrides: dict | None) -> dict[str, str]:
    """Merge per-environment overrides onto the default ceilings.

    Values are stored in canonical form so a converged quota reads back equal.
    """
    overrides = overrides or {}
    unknown = sorted(set(overrides) - set(QUOTA_DEFAULTS))
    if unknown:
        raise ValidationError(f"unknown resource override(s): {', '.join(unknown)}")

    hard: dict[str, str] = {}
    for key, (quota_key, default) in QUOTA_DEFAULTS.items():
        value = str(overrides.get(key, default))
        try:
            hard[quota_key] = canonical_quantity(value)
        except ValueError as exc:
            raise ValidationError(f"resource override {key}='{value}' is not a quantity") from exc
    return hard


def isolation_flag(env: Environment, key: str, default: bool) -> bool:
    return bool((env.isolation or {}).get(key, default))


class IsolationManager:
    def __init__(self, store: ClusterStore) -> None:
        self._store = store

    def namespace_name(self, env: Environment) -> str:
        return generate_namespace_name(env.pr_number, env.repository)

    # ── namespace ──────────────────────────────────────────────────────────

    async def ensure_namespace(self, env: Environment) -> str:
        name = self.namespace_name(env)
        _validate_namespace_name(name)

        ns_labels = {
            **labels.base_labels(env.pr_number),
            labels.LABEL_REPOSITORY: labels.repository_label(env.repository),
        }

        def mutate(body: dict) -> None:
            labels.ensure_owned(body, env, f"namespace {name}")
            set_metadata(body, ns_labels, labels.owner_annotations(env))

        result = await create_or_update(self._store, NAMESPACE, name, None, mutate)
        if result is ApplyResult.CREATED:
            log.info("Namespace %s created for %s", name, env.name)
        return name

    # ── resource quota ─────────────────────────────────────────────────────

    async def ensure_resource_quota(self, env: Environment, namespace: str) -> ApplyResult:
        hard = quota_hard_limits(env.resource_overrides)

        def mutate(body: dict) -> None:
            set_metadata(body, labels.base_labels(env.pr_number))
            spec = body.setdefault("spec", {})
            spec["hard"] = dict(hard)

        return await create_or_update(self._store, RESOURCE_QUOTA, QUOTA_NAME, namespace, mutate)

    async def remove_resource_quota(self, namespace: str) -> None:
        await delete_if_present(self._store, RESOURCE_QUOTA, QUOTA_NAME, namespace)

    # ── network policies ───────────────────────────────────────────────────

    def network_policy_specs(self, env: Environment) -> dict[str, dict]:
        port = settings.SERVICE_PORT
        egress = [
            {
                "to": [
                    {"namespaceSelector": {"matchLabels": {
                        "kubernetes.io/metadata.name": "kube-system"}}}
                ],
                "ports": [{"protocol": "UDP", "port": 53}],
            },
            {"ports": [{"protocol": "TCP", "port": 443}]},
            {
                "to": [{"podSelector": {}}],
                "ports": [{"protocol": "TCP", "port": port}],
            },
        ]
        if isolation_flag(env, "allow_http_egress", False):
            egress.append({"ports": [{"protocol": "TCP", "port": 80}]})

        return {
            # No rule lists at all: with both policy types set, that denies everything.
            DEFAULT_DENY_POLICY: {
                "podSelector": {},
                "policyTypes": ["Ingress", "Egress"],
            },
            ALLOW_INGRESS_POLICY: {
                "podSelector": {},
                "policyTypes": ["Ingress"],
                "ingress": [
                    {
                        "from": [
                            {"namespaceSelector": {"matchLabels": {
                                "kubernetes.io/metadata.name": settings.INGRESS_NAMESPACE}}}
                        ],
                        "ports": [{"protocol": "TCP", "port": port}],
                    }
                ],
            },
            ALLOW_EGRESS_POLICY: {
                "podSelector": {},
                "policyTypes": ["Egress"],
                "egress": egress,
            },
        }

    async def ensure_network_policies(self, env: Environment, namespace: str) -> dict[str, ApplyResult]:
        results: dict[str, ApplyResult] = {}
        for name, spec in self.network_policy_specs(env).items():

            def mutate(body: dict, spec=spec) -> None:
                set_metadata(body, labels.base_labels(env.pr_number))
                body["spec"] = spec

            results[name] = await create_or_update(
                self._store, NETWORK_POLICY, name, namespace, mutate
            )
        return results

    async def remove_network_policies(self, namespace: str) -> None:
        for name in POLICY_NAMES:
            await delete_if_present(self._store, NETWORK_POLICY, name, namespace)

    # ── teardown ───────────────────────────────────────────────────────────

    async def cleanup(self, env: Environment) -> None:
        """Delete the namespace; its quota and policies go with it."""
        name = self.namespace_name(env)
        try:
            current = await self._store.get(NAMESPACE, name)
        except NotFoundError:
            return

        if not labels.owned_by(current, env.id):
            log.warning("Namespace %s belongs to another environment; not deleting", name)
            return
        if current.get("metadata", {}).get("deletionTimestamp"):
            return
        await delete_if_present(self._store, NAMESPACE, name)

    async def namespace_removed(self, env: Environment) -> bool:
        name = self.namespace_name(env)
        try:
            current = await self._store.get(NAMESPACE, name)
        except NotFoundError:
            return True
        return not labels.owned_by(current, env.id)
