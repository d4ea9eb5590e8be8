from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Annotated
from uuid import UUID

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from app.core.config import SETTINGS
from app.db.engine import async_session_factory, session_scope
from app.models.principal import Principal
from app.repos.enrollment_roster import EnrollmentRoster
from app.repos.module_catalog import ModuleCatalog
from app.repos.pg_enrollment_roster import PgEnrollmentRoster
from app.repos.pg_module_catalog import PgModuleCatalog
from app.repos.pg_progress_store import PgProgressStore
from app.repos.pg_submission_ledger import PgSubmissionLedger
from app.repos.progress_store import ProgressStore
from app.repos.submission_ledger import SubmissionLedger
from app.services import token_service
from app.services.module_progress import ModuleProgressService

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/oauth/token")


def require_user(
    raw_token: Annotated[str, Depends(oauth2_scheme)],
) -> Principal:
    """Extract and validate the JWT bearer token. Returns a Principal."""
    try:
        claims = token_service.decode_access_token(raw_token)
    except jwt.ExpiredSignatureError:
        logger.warning("Expired token rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expired",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None
    except jwt.InvalidTokenError as e:
        logger.warning("Invalid token rejected: %s", e)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None

    try:
        user_id = UUID(str(claims["sub"]))
    except ValueError:
        logger.warning("Token subject is not a user id: %r", claims["sub"])
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None

    principal = Principal(user_id=user_id, roles=frozenset(claims.get("roles", [])))
    logger.debug(
        "Token validated for user=%s roles=%s", principal.user_id, principal.roles
    )
    return principal


def require_role(role: str):
    """Dependency factory: demand a specific role.

    Usage: Depends(require_role("student"))
    """

    def _guard(
        principal: Annotated[Principal, Depends(require_user)],
    ) -> Principal:
        if not principal.has_role(role):
            logger.warning(
                "Access denied: user=%s missing role=%s", principal.user_id, role
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return principal

    return _guard


require_student = require_role("student")


def _build_service(
    request: Request,
    catalog: ModuleCatalog,
    ledger: SubmissionLedger,
    store: ProgressStore,
    enrollments: EnrollmentRoster,
) -> ModuleProgressService:
    return ModuleProgressService(
        catalog=catalog,
        ledger=ledger,
        store=store,
        enrollments=enrollments,
        key_lock=request.app.state.key_lock,
        view_tracking_timeout_seconds=SETTINGS.view_tracking_timeout_seconds,
    )


async def get_progress_service(
    request: Request,
) -> AsyncGenerator[ModuleProgressService, None]:
    """Request-scoped service.

    With DATABASE_URL: Postgres repos sharing one session.  The service
    commits its own writes; anything left over is rolled back when the
    session closes.  Without: the in-memory repos on app.state.
    """
    if async_session_factory is None:
        state = request.app.state
        yield _build_service(
            request,
            state.module_catalog,
            state.submission_ledger,
            state.progress_store,
            state.enrollments,
        )
        return

    async with session_scope() as session:
        yield _build_service(
            request,
            PgModuleCatalog(session),
            PgSubmissionLedger(session),
            PgProgressStore(session),
            PgEnrollmentRoster(session),
        )
