"""
FastAPI dependencies for authentication, authorization, database sessions
and the application-owned lifecycle and real-time services.
"""

import uuid
from typing import Annotated, NoReturn, Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from refverify.database import async_session_maker
from refverify.kernel.errors import LifecycleFailure
from refverify.kernel.identity.identity_service import IdentityService, actor_for
from refverify.kernel.identity.jwt import verify_access_token
from refverify.kernel.models.base import enum_value
from refverify.kernel.models.user import REVIEWER_ROLES, User, UserRole
from refverify.orchestration.lifecycle_service import LifecycleService, RequestContext
from refverify.orchestration.transition_engine import Actor
from refverify.realtime.fanout import NotificationFanout
from refverify.realtime.registry import ConnectionRegistry


# Security scheme
security = HTTPBearer(auto_error=False)


async def get_db() -> AsyncSession:
    """Dependency that yields database sessions."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


DbSession = Annotated[AsyncSession, Depends(get_db)]


async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    db: DbSession,
) -> User:
    """Get current authenticated user or raise 401."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_access_token(credentials.credentials)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        user_id = uuid.UUID(payload.sub)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = await IdentityService(db).get_user_by_id(user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is disabled",
        )

    return user


CurrentUser = Annotated[User, Depends(get_current_user)]


async def require_admin(user: CurrentUser) -> User:
    """Require the current user to be an admin."""
    if enum_value(user.role) != UserRole.ADMIN.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user


AdminUser = Annotated[User, Depends(require_admin)]


async def require_reviewer(user: CurrentUser) -> User:
    """Require a verifier or an admin."""
    if UserRole(enum_value(user.role)) not in REVIEWER_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Verifier access required",
        )
    return user


ReviewerUser = Annotated[User, Depends(require_reviewer)]


def get_actor(user: CurrentUser) -> Actor:
    return actor_for(user)


CurrentActor = Annotated[Actor, Depends(get_actor)]


def get_client_ip(request: Request) -> Optional[str]:
    """Extract client IP from request."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def get_request_context(request: Request) -> RequestContext:
    """Audit metadata for the current request."""
    return RequestContext(method=request.method, ip_address=get_client_ip(request))


AuditContext = Annotated[RequestContext, Depends(get_request_context)]


# Application-owned services (built in the lifespan, see refverify.main)

def get_lifecycle(request: Request) -> LifecycleService:
    return request.app.state.lifecycle


def get_registry(request: Request) -> ConnectionRegistry:
    return request.app.state.registry


def get_fanout(request: Request) -> NotificationFanout:
    return request.app.state.fanout


Lifecycle = Annotated[LifecycleService, Depends(get_lifecycle)]
Registry = Annotated[ConnectionRegistry, Depends(get_registry)]
Fanout = Annotated[NotificationFanout, Depends(get_fanout)]


def raise_failure(failure: LifecycleFailure) -> NoReturn:
    """Turn a lifecycle failure into the matching HTTP error."""
    raise HTTPException(
        status_code=failure.http_status,
        detail={"detail": failure.message, "code": failure.kind.value},
    )
