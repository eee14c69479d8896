"""Ingress manager: routes pr-{N}.{BASE_DOMAIN} to an environment's services.

One Ingress per environment, inside its namespace, so namespace deletion
removes it. cert-manager issues the certificate and external-dns publishes
the host; both are driven by annotations.

Paths:
  frontend  → /
  {service} → /{service}

Backends are the Services Argo CD deploys. The kustomize name prefix makes
service "api" of PR 42 the Service pr-42-api.
"""

import logging

from previewd.config import settings
from previewd.kube import labels
from previewd.kube.store import INGRESS, ApplyResult, ClusterStore, create_or_update, set_metadata
from previewd.models.environment import Environment

log = logging.getLogger(__name__)

INGRESS_NAME = "preview-ingress"

ANNOTATION_CERT_ISSUER = "cert-manager.io/cluster-issuer"
ANNOTATION_DNS_HOSTNAME = "external-dns.alpha.kubernetes.io/hostname"
ANNOTATION_SSL_REDIRECT = "nginx.ingress.kubernetes.io/ssl-redirect"


def ingress_host(pr_number: int, base_domain: str | None = None) -> str:
    return f"pr-{pr_number}.{base_domain or settings.BASE_DOMAIN}"


def service_path(service: str) -> str:
    return "/" if service == "frontend" else f"/{service}"


def backend_service_name(pr_number: int, service: str) -> str:
    return f"pr-{pr_number}-{service}"


def tls_secret_name(pr_number: int) -> str:
    return f"pr-{pr_number}-tls"


class IngressManager:
    def __init__(
        self,
        store: ClusterStore,
        base_domain: str | None = None,
        cert_issuer: str | None = None,
        ingress_class: str | None = None,
        service_port: int | None = None,
    ) -> None:
        self._store = store
        self.base_domain = base_domain or settings.BASE_DOMAIN
        self.cert_issuer = cert_issuer or settings.CERT_ISSUER
        self.ingress_class = ingress_class or settings.INGRESS_CLASS
        self.service_port = service_port or settings.SERVICE_PORT

    def build(self, env: Environment, namespace: str, services: list[str]) -> dict:
        pr = env.pr_number
        host = ingress_host(pr, self.base_domain)
        paths = [
            {
                "path": service_path(service),
                "pathType": "Prefix",
                "backend": {
                    "service": {
                        "name": backend_service_name(pr, service),
                        "port": {"number": self.service_port},
                    }
                },
            }
            for service in services
        ]
        spec: dict = {
            "tls": [{"hosts": [host], "secretName": tls_secret_name(pr)}],
            "rules": [{"host": host, "http": {"paths": paths}}],
        }
        if self.ingress_class:
            spec["ingressClassName"] = self.ingress_class

        return {
            "apiVersion": INGRESS.api_version,
            "kind": INGRESS.kind,
            "metadata": {
                "name": INGRESS_NAME,
                "namespace": namespace,
                "labels": {
                    **labels.base_labels(pr),
                    labels.LABEL_REPOSITORY: labels.repository_label(env.repository),
                },
                "annotations": {
                    ANNOTATION_CERT_ISSUER: self.cert_issuer,
                    ANNOTATION_DNS_HOSTNAME: host,
                    ANNOTATION_SSL_REDIRECT: "true",
                    **labels.owner_annotations(env),
                },
            },
            "spec": spec,
        }

    async def ensure_ingress(
        self, env: Environment, namespace: str, services: list[str]
    ) -> ApplyResult:
        desired = self.build(env, namespace, services)

        def mutate(body: dict) -> None:
            meta = desired["metadata"]
            set_metadata(body, meta["labels"], meta["annotations"])
            body["spec"] = desired["spec"]

        result = await create_or_update(self._store, INGRESS, INGRESS_NAME, namespace, mutate)
        if result is ApplyResult.CREATED:
            log.info(
                "Ingress for %s serves https://%s",
                env.name, ingress_host(env.pr_number, self.base_domain),
            )
        return result
