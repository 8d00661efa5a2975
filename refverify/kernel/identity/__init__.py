"""
Identity collaborator - password login, access tokens and principal resolution.
"""

from refverify.kernel.identity.password import PasswordHasher, verify_password, hash_password
from refverify.kernel.identity.jwt import (
    JWTManager,
    IssuedToken,
    AccessTokenPayload,
    create_access_token,
    verify_access_token,
)
from refverify.kernel.identity.identity_service import (
    IdentityService,
    PrincipalResolver,
    actor_for,
    session_resolver,
)

__all__ = [
    "PasswordHasher",
    "verify_password",
    "hash_password",
    "JWTManager",
    "IssuedToken",
    "AccessTokenPayload",
    "create_access_token",
    "verify_access_token",
    "IdentityService",
    "PrincipalResolver",
    "actor_for",
    "session_resolver",
]
