"""Cost estimator: stateless apart from the injected pricing cell, no DB access.

Cost formula per pod:
  (cpu_cores * cpu_rate + memory_gib * memory_rate) * hours
  * (1 - spot_discount)   when spot pricing applies

cpu_cores and memory_gib are the sums of container resource *requests*.
Pods are plain manifests (dicts) as returned by the cluster store.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from kubernetes.utils import parse_quantity

from previewd.cost.pricing import PricingCell, PricingConfig

log = logging.getLogger(__name__)

_GIB = Decimal(1024**3)


@dataclass(frozen=True)
class CostEstimate:
    currency: str
    hourly_cost: str
    total_cost: str

    def to_status(self) -> dict[str, str]:
        return {
            "currency": self.currency,
            "hourlyCost": self.hourly_cost,
            "totalCost": self.total_cost,
        }


def format_cost(cost: float) -> str:
    return f"{cost:.4f}"


def _quantity(raw, pod_name: str) -> Decimal:
    try:
        return parse_quantity(raw)
    except ValueError:
        log.warning("Ignoring unparseable resource quantity %r on pod %s", raw, pod_name)
        return Decimal(0)


def pod_requests(pod: dict) -> tuple[float, float]:
    """Return (cpu_cores, memory_gib) requested across all containers of a pod."""
    name = pod.get("metadata", {}).get("name", "?")
    cpu = Decimal(0)
    memory = Decimal(0)
    for container in pod.get("spec", {}).get("containers") or []:
        requests = (container.get("resources") or {}).get("requests") or {}
        if "cpu" in requests:
            cpu += _quantity(requests["cpu"], name)
        if "memory" in requests:
            memory += _quantity(requests["memory"], name)
    return float(cpu), float(memory / _GIB)


class CostEstimator:
    def __init__(self, pricing: PricingCell) -> None:
        self._pricing = pricing

    def get_config(self) -> PricingConfig:
        return self._pricing.get()

    def update_config(self, config: PricingConfig) -> None:
        self._pricing.set(config)

    def calculate_unit_cost(self, pod: dict, duration: timedelta, use_spot: bool) -> float:
        config = self._pricing.get()
        return self._unit_cost(config, pod, duration, use_spot)

    @staticmethod
    def _unit_cost(
        config: PricingConfig, pod: dict, duration: timedelta, use_spot: bool
    ) -> float:
        cpu_cores, memory_gib = pod_requests(pod)
        hours = duration.total_seconds() / 3600
        cost = (
            cpu_cores * config.cpu_cost_per_hour * hours
            + memory_gib * config.memory_cost_per_hour * hours
        )
        if use_spot:
            cost *= 1 - config.spot_discount
        return cost

    def estimate_environment_cost(
        self, pods: list[dict], ttl: timedelta, use_spot: bool
    ) -> CostEstimate:
        # One snapshot for the whole estimate so currency and rates agree.
        config = self._pricing.get()
        hourly = sum(
            self._unit_cost(config, pod, timedelta(hours=1), use_spot) for pod in pods
        )
        total = hourly * (ttl.total_seconds() / 3600)
        return CostEstimate(
            currency=config.currency,
            hourly_cost=format_cost(hourly),
            total_cost=format_cost(total),
        )

    def track_actual_cost(
        self,
        namespace: str,
        pods: list[dict],
        actual_duration: timedelta,
        use_spot: bool,
    ) -> float:
        config = self._pricing.get()
        return sum(
            self._unit_cost(config, pod, actual_duration, use_spot)
            for pod in pods
            if pod.get("metadata", {}).get("namespace") == namespace
        )

    @staticmethod
    def calculate_daily_cost(hourly_cost: float) -> float:
        return hourly_cost * 24
