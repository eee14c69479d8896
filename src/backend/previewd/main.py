"""previewd FastAPI application.

Entry point: uvicorn previewd.main:app

The lifespan wires the long-lived collaborators once per process and keeps
them on app.state:

  cluster store ─┬─ isolation manager ─┐
                 ├─ descriptor generator ├─ reconcile engine ─ dispatcher
  pricing cell ── cost estimator ───────┘
  httpx client ── GitHub client ─────────┘

APScheduler drives the periodic resync and the TTL cleanup sweep.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from previewd.cleanup.scheduler import CleanupScheduler
from previewd.config import settings
from previewd.cost.estimator import CostEstimator
from previewd.cost.pricing import PricingCell, default_pricing
from previewd.database import AsyncSessionLocal, async_engine
from previewd.errors import PreviewdError
from previewd.github.client import GitHubClient
from previewd.gitops.descriptor import DescriptorGenerator
from previewd.ingress.manager import IngressManager
from previewd.isolation.manager import IsolationManager
from previewd.kube.store import KubernetesClusterStore
from previewd.middleware import RequestIDLogFilter, RequestIDMiddleware, get_request_id
from previewd.reconcile.dispatcher import ReconcileDispatcher
from previewd.reconcile.engine import ReconcileEngine
from previewd.routers import environments, health, pricing

log = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s"


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler.addFilter(RequestIDLogFilter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.LOG_LEVEL.upper())


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    configure_logging()

    http_client = httpx.AsyncClient(timeout=settings.EXTERNAL_API_TIMEOUT_SECONDS)
    store = KubernetesClusterStore(
        kubeconfig_path=settings.KUBECONFIG_PATH,
        context=settings.KUBE_CONTEXT,
        in_cluster=settings.KUBE_IN_CLUSTER,
    )
    estimator = CostEstimator(PricingCell(default_pricing()))
    repo_client = GitHubClient(http_client) if settings.GITHUB_TOKEN else None
    if repo_client is None:
        log.warning("GITHUB_TOKEN is not set; service detection and commit statuses are off")

    engine = ReconcileEngine(
        store=store,
        isolation=IsolationManager(store),
        ingress=IngressManager(store),
        descriptors=DescriptorGenerator(store),
        estimator=estimator,
        session_factory=AsyncSessionLocal,
        repo_client=repo_client,
    )
    dispatcher = ReconcileDispatcher(engine, session_factory=AsyncSessionLocal)
    cleanup = CleanupScheduler(dispatcher, session_factory=AsyncSessionLocal)

    app.state.estimator = estimator
    app.state.dispatcher = dispatcher

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        dispatcher.resync,
        "interval",
        seconds=settings.RESYNC_INTERVAL_SECONDS,
        max_instances=1,
    )
    scheduler.add_job(
        cleanup.sweep,
        "interval",
        minutes=settings.CLEANUP_INTERVAL_MINUTES,
        max_instances=1,
    )
    scheduler.start()
    # Pick up whatever was in flight when the previous process stopped.
    await dispatcher.resync()

    yield

    scheduler.shutdown(wait=False)
    await dispatcher.shutdown()
    await http_client.aclose()
    await async_engine.dispose()


app = FastAPI(title="previewd", lifespan=lifespan)

app.add_middleware(RequestIDMiddleware)


@app.exception_handler(PreviewdError)
async def previewd_error_handler(request: Request, exc: PreviewdError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "code": exc.code,
                "message": exc.message,
                "request_id": get_request_id(),
            }
        },
        headers={"X-Request-ID": get_request_id()},
    )


app.include_router(health.router)
app.include_router(environments.router)
app.include_router(pricing.router)
