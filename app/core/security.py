"""
Token and hashing utilities.

Voters authenticate against the identity service, which issues HS256 JWTs.
This service only verifies those tokens and derives the privacy-preserving
voter reference stored on ballots.
"""

import hashlib
from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt

from app.core.config import settings
from app.core.logging_config import get_logger

logger = get_logger(__name__)


def create_access_token(
    data: dict, expires_delta: timedelta | None = None
) -> str:
    """
    Create a JWT access token.

    Used by tests and local tooling; production tokens come from the
    identity service.

    Args:
        data: Payload data to encode in the token
        expires_delta: Optional expiration time delta

    Returns:
        Encoded JWT token string
    """
    to_encode = data.copy()
    expire = datetime.now(UTC) + (expires_delta or timedelta(minutes=60))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any] | None:
    """
    Decode and verify a JWT access token.

    Args:
        token: JWT token string

    Returns:
        Decoded token payload or None if invalid
    """
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        logger.debug(f"Rejected access token: {e}")
        return None


def hash_identifier(identifier: str) -> str:
    """Create SHA-256 hash of an identifier for privacy."""
    return hashlib.sha256(identifier.encode()).hexdigest()


def generate_voter_hash(election_id: str, voter_id: str) -> str:
    """Generate the election-scoped voter reference stored on ballots."""
    return hash_identifier(f"{election_id}:voter:{voter_id}")
