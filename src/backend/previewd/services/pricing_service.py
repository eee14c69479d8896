"""Pricing service: read and replace the live pricing configuration.

The configuration lives in the PricingCell shared with the reconcile engine,
so an update is visible to the very next cost estimate.
"""

import logging

from previewd.auth.jwt import Claims
from previewd.auth.roles import assert_admin
from previewd.cost.estimator import CostEstimator
from previewd.cost.pricing import PricingConfig
from previewd.schemas.pricing import PricingRequest, PricingResponse

log = logging.getLogger(__name__)


class PricingService:
    def __init__(self, estimator: CostEstimator) -> None:
        self._estimator = estimator

    def get_pricing(self, claims: Claims) -> PricingResponse:
        return PricingResponse.model_validate(self._estimator.get_config())

    def update_pricing(self, claims: Claims, body: PricingRequest) -> PricingResponse:
        assert_admin(claims)
        config = PricingConfig(
            cpu_cost_per_hour=body.cpu_cost_per_hour,
            memory_cost_per_hour=body.memory_cost_per_hour,
            spot_discount=body.spot_discount,
            currency=body.currency.upper(),
        )
        self._estimator.update_config(config)
        log.info(
            "Pricing updated by %s: cpu=%s/h memory=%s/GiB-h spot_discount=%s %s",
            claims.sub, config.cpu_cost_per_hour, config.memory_cost_per_hour,
            config.spot_discount, config.currency,
        )
        return PricingResponse.model_validate(config)
