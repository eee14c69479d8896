"""JWT issuance and verification for previewd.

Uses python-jose with HS256. previewd only verifies tokens; they are issued
by whatever holds JWT_SECRET (the event gateway's deployment, the platform
team's secret tooling). create_token() and build_claims() produce the same
claims shape and are what the test suite signs requests with.
"""

from dataclasses import dataclass
from datetime import UTC, datetime

from jose import ExpiredSignatureError, JWTError, jwt

from previewd.config import settings
from previewd.errors import UnauthorizedError

_ALGORITHM = "HS256"
_DEFAULT_EXPIRY_SECONDS = 3600


@dataclass
class Claims:
    sub: str
    role: str
    exp: int


def create_token(claims: Claims) -> str:
    payload = {
        "sub": claims.sub,
        "role": claims.role,
        "exp": claims.exp,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=_ALGORITHM)


def build_claims(sub: str, role: str, expires_in: int = _DEFAULT_EXPIRY_SECONDS) -> Claims:
    exp = int(datetime.now(UTC).timestamp()) + expires_in
    return Claims(sub=sub, role=role, exp=exp)


def verify_token(token: str) -> Claims:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise UnauthorizedError("Token has expired") from exc
    except JWTError as exc:
        raise UnauthorizedError("Invalid token") from exc

    try:
        return Claims(sub=payload["sub"], role=payload["role"], exp=payload["exp"])
    except KeyError as exc:
        raise UnauthorizedError(f"Token is missing claim {exc.args[0]!r}") from exc
