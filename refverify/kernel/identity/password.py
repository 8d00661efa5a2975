"""
Password hashing utilities using bcrypt.
"""

import bcrypt

# Number of rounds for bcrypt hashing (12 is secure default)
BCRYPT_ROUNDS = 12


class PasswordHasher:
    """Password hashing service."""

    rounds = BCRYPT_ROUNDS

    @staticmethod
    def _encode(password: str) -> bytes:
        # bcrypt only looks at the first 72 bytes
        return password.encode("utf-8")[:72]

    @classmethod
    def hash(cls, password: str) -> str:
        """Hash a password with a fresh salt."""
        salt = bcrypt.gensalt(rounds=cls.rounds)
        return bcrypt.hashpw(cls._encode(password), salt).decode("utf-8")

    @classmethod
    def verify(cls, plain_password: str, hashed_password: str) -> bool:
        """Check a password against a stored hash. Malformed hashes never match."""
        try:
            return bcrypt.checkpw(cls._encode(plain_password), hashed_password.encode("utf-8"))
        except ValueError:
            return False


# Convenience functions
def hash_password(password: str) -> str:
    """Hash a password."""
    return PasswordHasher.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password."""
    return PasswordHasher.verify(plain_password, hashed_password)
