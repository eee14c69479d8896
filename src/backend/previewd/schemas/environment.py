"""Pydantic request/response schemas for the environments API."""

from __future__ import annotations

import re
from datetime import datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field, field_validator

from previewd.config import settings
from previewd.durations import parse_duration
from previewd.errors import ValidationError
from previewd.isolation.manager import quota_hard_limits

_REPOSITORY_PATTERN = r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$"
_SHA_PATTERN = r"^[a-f0-9]{40}$"
_SERVICE_NAME = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_MAX_SERVICE_NAME = 40


def validate_ttl(value: str) -> str:
    try:
        ttl = parse_duration(value)
    except ValidationError as exc:
        raise ValueError(exc.message) from exc
    if ttl > timedelta(hours=settings.MAX_TTL_HOURS):
        msg = f"ttl must not exceed {settings.MAX_TTL_HOURS}h"
        raise ValueError(msg)
    return value.strip()


def validate_services(services: list[str]) -> list[str]:
    seen: list[str] = []
    for name in services:
        if len(name) > _MAX_SERVICE_NAME or not _SERVICE_NAME.match(name):
            msg = f"service name '{name}' must be a lower-case DNS label of at most {_MAX_SERVICE_NAME} characters"
            raise ValueError(msg)
        if name not in seen:
            seen.append(name)
    return seen


def validate_overrides(overrides: dict[str, str]) -> dict[str, str]:
    try:
        quota_hard_limits(overrides)
    except ValidationError as exc:
        raise ValueError(exc.message) from exc
    return overrides


class IsolationSettings(BaseModel):
    resource_quota: bool = True
    network_policies: bool = True
    allow_http_egress: bool = False


class EnvironmentCreateRequest(BaseModel):
    repository: str = Field(pattern=_REPOSITORY_PATTERN)
    pr_number: int = Field(ge=1)
    head_sha: str = Field(pattern=_SHA_PATTERN)
    base_branch: str | None = None
    head_branch: str | None = None
    services: list[str] = Field(default_factory=list)
    ttl: str = Field(default_factory=lambda: settings.DEFAULT_TTL)
    resource_overrides: dict[str, str] = Field(default_factory=dict)
    isolation: IsolationSettings = Field(default_factory=IsolationSettings)
    labels: dict[str, str] = Field(default_factory=dict)

    @field_validator("services")
    @classmethod
    def check_services(cls, v: list[str]) -> list[str]:
        return validate_services(v)

    @field_validator("ttl")
    @classmethod
    def check_ttl(cls, v: str) -> str:
        return validate_ttl(v)

    @field_validator("resource_overrides")
    @classmethod
    def check_overrides(cls, v: dict[str, str]) -> dict[str, str]:
        return validate_overrides(v)


class EnvironmentPatchRequest(BaseModel):
    """Partial update; only the fields present in the body change."""

    head_sha: str | None = Field(default=None, pattern=_SHA_PATTERN)
    base_branch: str | None = None
    head_branch: str | None = None
    services: list[str] | None = None
    ttl: str | None = None
    resource_overrides: dict[str, str] | None = None
    isolation: IsolationSettings | None = None
    labels: dict[str, str] | None = None

    @field_validator("services")
    @classmethod
    def check_services(cls, v: list[str] | None) -> list[str] | None:
        return None if v is None else validate_services(v)

    @field_validator("ttl")
    @classmethod
    def check_ttl(cls, v: str | None) -> str | None:
        return None if v is None else validate_ttl(v)

    @field_validator("resource_overrides")
    @classmethod
    def check_overrides(cls, v: dict[str, str] | None) -> dict[str, str] | None:
        return None if v is None else validate_overrides(v)


class EnvironmentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    repository: str
    pr_number: int
    head_sha: str
    base_branch: str | None
    head_branch: str | None
    services: list[str]
    ttl: str
    resource_overrides: dict
    isolation: dict
    labels: dict
    generation: int
    observed_generation: int
    phase: str
    url: str | None
    namespace_name: str | None
    service_statuses: list[dict]
    conditions: list[dict]
    cost_estimate: dict | None
    actual_cost: dict | None
    created_at: datetime | None
    expires_at: datetime | None
    last_synced_at: datetime | None
    deletion_requested_at: datetime | None
