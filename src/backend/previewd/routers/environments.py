"""Preview environment endpoints.

GET    /api/v1/environments                  list environments (any role)
GET    /api/v1/environments/{id}             single environment (any role)
POST   /api/v1/environments                  create (gateway, admin)
PATCH  /api/v1/environments/{id}             update desired state (gateway, admin)
DELETE /api/v1/environments/{id}             request teardown (gateway, admin)
POST   /api/v1/environments/{id}/reconcile   force a reconcile (admin)
"""

import uuid

from fastapi import APIRouter, Depends, Request, status

from previewd.auth.dependencies import get_current_user
from previewd.auth.jwt import Claims
from previewd.database import get_db
from previewd.reconcile.dispatcher import ReconcileDispatcher
from previewd.schemas.environment import (
    EnvironmentCreateRequest,
    EnvironmentPatchRequest,
    EnvironmentResponse,
)
from previewd.services.environment_service import EnvironmentService

router = APIRouter(prefix="/api/v1/environments", tags=["environments"])


def get_dispatcher(request: Request) -> ReconcileDispatcher | None:
    # Set by the lifespan; absent when the app runs without it (tests).
    return getattr(request.app.state, "dispatcher", None)


def _service(
    session=Depends(get_db),
    dispatcher: ReconcileDispatcher | None = Depends(get_dispatcher),
) -> EnvironmentService:
    return EnvironmentService(session=session, dispatcher=dispatcher)


@router.get("", response_model=list[EnvironmentResponse])
async def list_environments(
    claims: Claims = Depends(get_current_user),
    svc: EnvironmentService = Depends(_service),
) -> list[EnvironmentResponse]:
    return await svc.list_environments(claims)


@router.get("/{env_id}", response_model=EnvironmentResponse)
async def get_environment(
    env_id: uuid.UUID,
    claims: Claims = Depends(get_current_user),
    svc: EnvironmentService = Depends(_service),
) -> EnvironmentResponse:
    return await svc.get_environment(claims, str(env_id))


@router.post("", response_model=EnvironmentResponse, status_code=status.HTTP_201_CREATED)
async def create_environment(
    body: EnvironmentCreateRequest,
    claims: Claims = Depends(get_current_user),
    svc: EnvironmentService = Depends(_service),
) -> EnvironmentResponse:
    return await svc.create_environment(claims, body)


@router.patch("/{env_id}", response_model=EnvironmentResponse)
async def patch_environment(
    env_id: uuid.UUID,
    body: EnvironmentPatchRequest,
    claims: Claims = Depends(get_current_user),
    svc: EnvironmentService = Depends(_service),
) -> EnvironmentResponse:
    return await svc.patch_environment(claims, str(env_id), body)


@router.delete(
    "/{env_id}", response_model=EnvironmentResponse, status_code=status.HTTP_202_ACCEPTED
)
async def delete_environment(
    env_id: uuid.UUID,
    claims: Claims = Depends(get_current_user),
    svc: EnvironmentService = Depends(_service),
) -> EnvironmentResponse:
    return await svc.request_deletion(claims, str(env_id))


@router.post(
    "/{env_id}/reconcile",
    response_model=EnvironmentResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def reconcile_environment(
    env_id: uuid.UUID,
    claims: Claims = Depends(get_current_user),
    svc: EnvironmentService = Depends(_service),
) -> EnvironmentResponse:
    return await svc.request_reconcile(claims, str(env_id))
