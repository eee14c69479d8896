"""AppSettings -- previewd configuration.

All environment variables are read via pydantic-settings.
DB_URL and JWT_SECRET are required and will cause a startup failure if missing.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """previewd settings, loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Database - Required, application fails to start if missing
    DB_URL: str

    # Authentication - Required, application fails to start if missing
    JWT_SECRET: str

    # Logging
    LOG_LEVEL: str = "INFO"

    # Kubernetes
    KUBECONFIG_PATH: str | None = None
    KUBE_CONTEXT: str | None = None
    KUBE_IN_CLUSTER: bool = False
    CONTROL_NAMESPACE: str = "previewd-system"

    # Argo CD
    ARGOCD_NAMESPACE: str = "argocd"
    ARGOCD_PROJECT: str = "default"
    GITOPS_REPO_URL: str = "https://github.com/example/preview-manifests.git"
    GITOPS_DESTINATION_SERVER: str = "https://kubernetes.default.svc"

    # Networking
    INGRESS_NAMESPACE: str = "ingress-nginx"
    SERVICE_PORT: int = 8080
    BASE_DOMAIN: str = "preview.example.com"
    CERT_ISSUER: str = "letsencrypt-prod"
    INGRESS_CLASS: str | None = None

    # GitHub
    GITHUB_API_URL: str = "https://api.github.com"
    GITHUB_TOKEN: str = ""
    EXTERNAL_API_TIMEOUT_SECONDS: int = 30

    # Environment lifecycle
    DEFAULT_TTL: str = "4h"
    MAX_TTL_HOURS: int = 168
    USE_SPOT_PRICING: bool = False

    # Reconcile policy
    RECONCILE_TIMEOUT_SECONDS: float = 60.0
    POLL_INTERVAL_SECONDS: float = 15.0
    READY_RESYNC_SECONDS: float = 300.0
    DELETE_POLL_SECONDS: float = 5.0
    RETRY_LIMIT: int = 5
    RETRY_BASE_SECONDS: float = 5.0
    RETRY_MAX_SECONDS: float = 180.0
    MAX_CONCURRENT_RECONCILES: int = 4

    # Schedules
    RESYNC_INTERVAL_SECONDS: int = 300
    CLEANUP_INTERVAL_MINUTES: int = 5

    # Pricing defaults (USD per core-hour / GiB-hour)
    PRICING_CPU_COST_PER_HOUR: float = 0.04
    PRICING_MEMORY_COST_PER_HOUR: float = 0.005
    PRICING_SPOT_DISCOUNT: float = 0.30
    PRICING_CURRENCY: str = "USD"


settings = AppSettings()
