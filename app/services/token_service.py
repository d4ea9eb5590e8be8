"""Bearer token verification.

Tokens are issued by the platform's auth service; this service only
verifies them.  HS256 with a shared secret, algorithm pinned so alg:none
and alg-switching tokens are rejected.
"""

from __future__ import annotations

import jwt

from app.core.config import SETTINGS

ALGORITHM = "HS256"


def decode_access_token(token: str) -> dict:
    """Verify signature and claims, return the payload.

    Raises jwt.ExpiredSignatureError, jwt.InvalidTokenError on failure.
    """
    return jwt.decode(
        token,
        SETTINGS.jwt_secret,
        algorithms=[ALGORITHM],
        audience=SETTINGS.jwt_audience,
        options={"require": ["sub", "exp", "iat"]},
    )
