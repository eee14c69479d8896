"""FastAPI dependency for enforcing authentication on protected routes.

Usage:
    @router.get("/protected")
    async def endpoint(claims: Claims = Depends(get_current_user)):
        ...
"""

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from previewd.auth.jwt import Claims, verify_token
from previewd.auth.roles import KNOWN_ROLES
from previewd.errors import ForbiddenError, UnauthorizedError

_bearer = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> Claims:
    if credentials is None:
        raise UnauthorizedError("Missing Bearer token")
    claims = verify_token(credentials.credentials)
    if claims.role not in KNOWN_ROLES:
        raise ForbiddenError(f"Unknown role '{claims.role}'")
    return claims
