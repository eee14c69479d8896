"""Pricing configuration endpoints.

GET /api/v1/pricing  current rates (any role)
PUT /api/v1/pricing  replace rates (admin)
"""

from fastapi import APIRouter, Depends, Request

from previewd.auth.dependencies import get_current_user
from previewd.auth.jwt import Claims
from previewd.cost.estimator import CostEstimator
from previewd.errors import TransientError
from previewd.schemas.pricing import PricingRequest, PricingResponse
from previewd.services.pricing_service import PricingService

router = APIRouter(prefix="/api/v1/pricing", tags=["pricing"])


def get_estimator(request: Request) -> CostEstimator:
    estimator = getattr(request.app.state, "estimator", None)
    if estimator is None:
        raise TransientError("Cost estimator is not initialised yet")
    return estimator


def _service(estimator: CostEstimator = Depends(get_estimator)) -> PricingService:
    return PricingService(estimator)


@router.get("", response_model=PricingResponse)
async def get_pricing(
    claims: Claims = Depends(get_current_user),
    svc: PricingService = Depends(_service),
) -> PricingResponse:
    return svc.get_pricing(claims)


@router.put("", response_model=PricingResponse)
async def update_pricing(
    body: PricingRequest,
    claims: Claims = Depends(get_current_user),
    svc: PricingService = Depends(_service),
) -> PricingResponse:
    return svc.update_pricing(claims, body)
