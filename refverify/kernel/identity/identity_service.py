"""
Identity service for user management operations.
"""

import uuid
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from refverify.kernel.errors import Unauthorized
from refverify.kernel.identity.jwt import IssuedToken, JWTManager
from refverify.kernel.identity.password import hash_password, verify_password
from refverify.kernel.models.base import enum_value
from refverify.kernel.models.user import User, UserRole
from refverify.logging_config import get_logger
from refverify.orchestration.transition_engine import Actor

logger = get_logger(__name__)


def actor_for(user: User) -> Actor:
    """Build the lifecycle actor for a loaded user."""
    return Actor(user_id=user.id, role=UserRole(enum_value(user.role)), country=user.country)


class IdentityService:
    """
    Service for user identity operations.

    Handles registration, password login and resolving bearer credentials
    into principals.
    """

    def __init__(self, session: AsyncSession, jwt_manager: Optional[JWTManager] = None):
        self.session = session
        self.jwt_manager = jwt_manager or JWTManager()

    async def register_user(
        self,
        email: str,
        username: str,
        password: str,
        country: str,
        role: UserRole = UserRole.CONTRIBUTOR,
    ) -> User:
        """
        Register a new user.

        Raises:
            ValueError: If email or username already exists
        """
        email = email.lower().strip()
        username = username.strip()
        query = select(User).where(or_(User.email == email, User.username == username))
        result = await self.session.execute(query)
        if result.scalars().first():
            raise ValueError("Email or username already registered")

        user = User(
            email=email,
            username=username,
            password_hash=hash_password(password),
            country=country.upper().strip(),
            role=role,
        )
        self.session.add(user)
        await self.session.flush()

        logger.info(
            "User registered",
            extra={"user_id": str(user.id), "role": enum_value(user.role), "country": user.country},
        )
        return user

    async def authenticate(
        self,
        email: str,
        password: str,
    ) -> Optional[tuple[User, IssuedToken]]:
        """
        Check credentials and issue an access token.

        Returns:
            Tuple of (User, IssuedToken) if successful, None otherwise
        """
        user = await self.get_user_by_email(email)
        if not user or not user.is_active:
            return None
        if not verify_password(password, user.password_hash):
            return None

        token = self.jwt_manager.create_access_token(user.id, enum_value(user.role))
        return user, token

    async def get_user_by_id(self, user_id: uuid.UUID) -> Optional[User]:
        return await self.session.get(User, user_id)

    async def get_user_by_email(self, email: str) -> Optional[User]:
        query = select(User).where(User.email == email.lower().strip())
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def resolve_principal(self, token: str) -> Actor:
        """
        Turn a bearer credential into an actor.

        Raises:
            Unauthorized: token invalid or expired, user unknown or inactive
        """
        payload = self.jwt_manager.verify_access_token(token)
        if payload is None:
            raise Unauthorized("Invalid or expired token")
        try:
            user_id = uuid.UUID(payload.sub)
        except ValueError:
            raise Unauthorized("Malformed token subject") from None

        user = await self.get_user_by_id(user_id)
        if user is None:
            raise Unauthorized("User not found")
        if not user.is_active:
            raise Unauthorized("User account is deactivated")
        return actor_for(user)

    async def leaderboard(self, limit: int = 20, country: Optional[str] = None) -> List[User]:
        """Active users ordered by points."""
        query = select(User).where(User.is_active.is_(True))
        if country:
            query = query.where(User.country == country.upper())
        query = query.order_by(User.points.desc(), User.username).limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())


PrincipalResolver = Callable[[str], Awaitable[Actor]]


def session_resolver(session_maker: async_sessionmaker) -> PrincipalResolver:
    """Resolver for connections that live outside any request session."""

    async def resolve(token: str) -> Actor:
        async with session_maker() as session:
            return await IdentityService(session).resolve_principal(token)

    return resolve
