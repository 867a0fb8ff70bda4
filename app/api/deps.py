"""API dependencies for authentication and voting services."""

from typing import Annotated

import asyncpg
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import Settings, get_settings
from app.core.database import get_db
from app.core.security import decode_access_token
from app.services.catalog import CatalogSource, PostgresCatalogSource
from app.services.submission import SubmissionCoordinator
from app.services.voting_sessions import Clock, SessionManager, utc_now
from app.services.voting_store import PostgresVotingStore, VotingStore

security = HTTPBearer()


async def get_current_voter(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> str:
    """
    Dependency returning the authenticated voter id.

    Tokens are issued by the identity service; the voter id is the ``sub``
    claim.
    """
    payload = decode_access_token(credentials.credentials)

    if payload is None or not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return str(payload["sub"])


def get_clock() -> Clock:
    return utc_now


async def get_catalog_source(
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
) -> CatalogSource:
    return PostgresCatalogSource(conn)


async def get_voting_store(
    conn: Annotated[asyncpg.Connection, Depends(get_db)],
) -> VotingStore:
    return PostgresVotingStore(conn)


def get_session_manager(
    store: Annotated[VotingStore, Depends(get_voting_store)],
    catalog: Annotated[CatalogSource, Depends(get_catalog_source)],
    settings: Annotated[Settings, Depends(get_settings)],
    clock: Annotated[Clock, Depends(get_clock)],
) -> SessionManager:
    return SessionManager(store, catalog, settings=settings, clock=clock)


def get_submission_coordinator(
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
    store: Annotated[VotingStore, Depends(get_voting_store)],
    catalog: Annotated[CatalogSource, Depends(get_catalog_source)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> SubmissionCoordinator:
    return SubmissionCoordinator(sessions, store, catalog, settings=settings)
