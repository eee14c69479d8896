"""Role helpers shared by the routers.

gateway  -- the event gateway; creates, patches and deletes environments
admin    -- everything the gateway can do, plus forced reconciles and pricing
viewer   -- read-only
"""

from previewd.auth.jwt import Claims
from previewd.errors import ForbiddenError

ROLE_GATEWAY = "gateway"
ROLE_ADMIN = "admin"
ROLE_VIEWER = "viewer"

KNOWN_ROLES: frozenset[str] = frozenset({ROLE_GATEWAY, ROLE_ADMIN, ROLE_VIEWER})
MUTATING_ROLES: frozenset[str] = frozenset({ROLE_GATEWAY, ROLE_ADMIN})


def can_mutate(claims: Claims) -> bool:
    return claims.role in MUTATING_ROLES


def assert_can_mutate(claims: Claims) -> None:
    if not can_mutate(claims):
        raise ForbiddenError("Only the gateway or an admin can modify environments")


def assert_admin(claims: Claims) -> None:
    if claims.role != ROLE_ADMIN:
        raise ForbiddenError("Admin role required")
