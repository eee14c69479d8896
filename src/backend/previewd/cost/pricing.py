"""Pricing configuration and the read/write-locked cell that holds it.

PricingConfig is frozen: an update swaps the whole snapshot under the write
lock, so a reader holding the read lock always sees one complete config.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from previewd.config import settings
from previewd.errors import ValidationError


@dataclass(frozen=True)
class PricingConfig:
    cpu_cost_per_hour: float = 0.04
    memory_cost_per_hour: float = 0.005
    spot_discount: float = 0.30
    currency: str = "USD"

    def validate(self) -> None:
        if self.cpu_cost_per_hour < 0 or self.memory_cost_per_hour < 0:
            raise ValidationError("pricing rates must not be negative")
        if not 0 <= self.spot_discount < 1:
            raise ValidationError("spot_discount must be in the range [0, 1)")
        if len(self.currency) != 3 or not self.currency.isalpha():
            raise ValidationError("currency must be a 3-letter code such as USD")


def default_pricing() -> PricingConfig:
    return PricingConfig(
        cpu_cost_per_hour=settings.PRICING_CPU_COST_PER_HOUR,
        memory_cost_per_hour=settings.PRICING_MEMORY_COST_PER_HOUR,
        spot_discount=settings.PRICING_SPOT_DISCOUNT,
        currency=settings.PRICING_CURRENCY.upper(),
    )


class ReadWriteLock:
    """Many concurrent readers or one writer; waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class PricingCell:
    def __init__(self, config: PricingConfig | None = None) -> None:
        initial = config or PricingConfig()
        initial.validate()
        self._config = initial
        self._lock = ReadWriteLock()

    def get(self) -> PricingConfig:
        with self._lock.read():
            return self._config

    def set(self, config: PricingConfig) -> None:
        config.validate()
        with self._lock.write():
            self._config = config
