"""Pydantic schemas for the pricing API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class PricingRequest(BaseModel):
    cpu_cost_per_hour: float = Field(ge=0)
    memory_cost_per_hour: float = Field(ge=0)
    spot_discount: float = Field(ge=0, lt=1)
    currency: str = Field(pattern=r"^[A-Za-z]{3}$")


class PricingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    cpu_cost_per_hour: float
    memory_cost_per_hour: float
    spot_discount: float
    currency: str
