"""Persistence for voting sessions, drafts and ballots.

Exactly-once guarantees come from the store, never from application locks:
the service may run as several processes with no shared memory. Every
"only if nothing exists yet" write is a single conditional statement backed
by a unique index:

- ``uq_voting_sessions_live``: one CREATED/ACTIVE session per (election, voter)
- ``uq_ballots_voter``: one ballot per (election, voter hash)
- ``uq_ballots_session``: one ballot per session
"""

import json
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Iterator, Protocol, Sequence

import asyncpg

from app.core.errors import AlreadyVoted, ConcurrentSubmissionConflict, PersistenceFailure
from app.core.logging_config import get_logger
from app.models.voting import (
    LIVE_SESSION_STATUSES,
    Ballot,
    PositionVote,
    SessionStatus,
    VotingSession,
)

logger = get_logger(__name__)


class VotingStore(Protocol):
    """Storage port used by the session manager and submission coordinator."""

    async def get_session(self, session_id: str) -> VotingSession | None: ...

    async def find_live_session(self, election_id: str, voter_id: str) -> VotingSession | None: ...

    async def insert_session(self, session: VotingSession, voter_hash: str) -> VotingSession | None:
        """Insert unless a live session or a ballot already exists for the voter.

        Returns None when the insert was refused.
        """
        ...

    async def expire_stale_sessions(self, election_id: str, voter_id: str, now: datetime) -> int: ...

    async def transition_session(
        self,
        session_id: str,
        from_statuses: Sequence[SessionStatus],
        to_status: SessionStatus,
    ) -> VotingSession | None:
        """Conditionally move a session to ``to_status``; None if it was not in ``from_statuses``."""
        ...

    async def touch_session(self, session_id: str, now: datetime) -> None: ...

    async def update_expiry(self, session_id: str, expires_at: datetime) -> VotingSession | None: ...

    async def load_draft(self, session_id: str) -> dict[str, Any] | None: ...

    async def save_draft(self, session_id: str, draft: dict[str, Any]) -> bool:
        """Persist a draft; False if the session is no longer ACTIVE."""
        ...

    async def commit_ballot(self, ballot: Ballot) -> Ballot:
        """Insert the ballot and mark its session SUBMITTED in one unit of work.

        Returns the stored ballot. A retry for a session whose ballot is
        already committed returns that ballot instead of writing a new one.

        Raises:
            AlreadyVoted: another session already holds the voter's ballot.
            ConcurrentSubmissionConflict: the session stopped being ACTIVE.
            PersistenceFailure: the write could not be completed.
        """
        ...

    async def has_ballot(self, election_id: str, voter_hash: str) -> bool: ...

    async def get_ballot_by_session(self, session_id: str) -> Ballot | None: ...

    async def get_ballot_by_verification_code(self, verification_code: str) -> Ballot | None: ...

    async def list_ballots_for_voter(self, voter_id: str) -> list[Ballot]: ...


# ============================================
# POSTGRES STORE
# ============================================


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    """Surface driver failures as PersistenceFailure."""
    try:
        yield
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, TimeoutError) as e:
        logger.error(f"Voting store {operation} failed: {e}", exc_info=True)
        raise PersistenceFailure() from e


class PostgresVotingStore:
    """asyncpg implementation of ``VotingStore``."""

    def __init__(self, conn: asyncpg.Connection) -> None:
        self.conn = conn

    async def get_session(self, session_id: str) -> VotingSession | None:
        with _translate_errors("get_session"):
            row = await self.conn.fetchrow(
                "SELECT * FROM voting_sessions WHERE id = $1",
                session_id,
            )
        return _parse_session_row(row)

    async def find_live_session(self, election_id: str, voter_id: str) -> VotingSession | None:
        with _translate_errors("find_live_session"):
            row = await self.conn.fetchrow(
                """
                SELECT * FROM voting_sessions
                WHERE election_id = $1 AND voter_id = $2
                AND status = ANY($3::text[])
                """,
                election_id,
                voter_id,
                [s.value for s in LIVE_SESSION_STATUSES],
            )
        return _parse_session_row(row)

    async def insert_session(self, session: VotingSession, voter_hash: str) -> VotingSession | None:
        with _translate_errors("insert_session"):
            row = await self.conn.fetchrow(
                """
                INSERT INTO voting_sessions (
                    id, election_id, voter_id, status, created_at, expires_at,
                    last_activity_at, ip_address, user_agent, device_fingerprint, draft
                )
                SELECT $1, $2, $3, $4, $5, $6, $5, $7, $8, $9, '{}'::jsonb
                WHERE NOT EXISTS (
                    SELECT 1 FROM ballots WHERE election_id = $2 AND voter_hash = $10
                )
                ON CONFLICT (election_id, voter_id) WHERE status IN ('created', 'active')
                DO NOTHING
                RETURNING *
                """,
                session.id,
                session.election_id,
                session.voter_id,
                session.status.value,
                session.created_at,
                session.expires_at,
                session.ip_address,
                session.user_agent,
                session.device_fingerprint,
                voter_hash,
            )
        return _parse_session_row(row)

    async def expire_stale_sessions(self, election_id: str, voter_id: str, now: datetime) -> int:
        with _translate_errors("expire_stale_sessions"):
            result = await self.conn.execute(
                """
                UPDATE voting_sessions
                SET status = 'expired', draft = NULL
                WHERE election_id = $1 AND voter_id = $2
                AND status IN ('created', 'active')
                AND expires_at <= $3
                """,
                election_id,
                voter_id,
                now,
            )
        return int(result.split()[-1])

    async def transition_session(
        self,
        session_id: str,
        from_statuses: Sequence[SessionStatus],
        to_status: SessionStatus,
    ) -> VotingSession | None:
        with _translate_errors("transition_session"):
            row = await self.conn.fetchrow(
                """
                UPDATE voting_sessions
                SET status = $2,
                    draft = CASE WHEN $2 = 'active' THEN draft ELSE NULL END
                WHERE id = $1 AND status = ANY($3::text[])
                RETURNING *
                """,
                session_id,
                to_status.value,
                [s.value for s in from_statuses],
            )
        return _parse_session_row(row)

    async def touch_session(self, session_id: str, now: datetime) -> None:
        with _translate_errors("touch_session"):
            await self.conn.execute(
                """
                UPDATE voting_sessions SET last_activity_at = $2
                WHERE id = $1 AND status = 'active'
                """,
                session_id,
                now,
            )

    async def update_expiry(self, session_id: str, expires_at: datetime) -> VotingSession | None:
        with _translate_errors("update_expiry"):
            row = await self.conn.fetchrow(
                """
                UPDATE voting_sessions SET expires_at = $2
                WHERE id = $1 AND status = 'active'
                RETURNING *
                """,
                session_id,
                expires_at,
            )
        return _parse_session_row(row)

    async def load_draft(self, session_id: str) -> dict[str, Any] | None:
        with _translate_errors("load_draft"):
            value = await self.conn.fetchval(
                "SELECT draft FROM voting_sessions WHERE id = $1",
                session_id,
            )
        return _load_json(value)

    async def save_draft(self, session_id: str, draft: dict[str, Any]) -> bool:
        with _translate_errors("save_draft"):
            result = await self.conn.execute(
                """
                UPDATE voting_sessions SET draft = $2::jsonb
                WHERE id = $1 AND status = 'active'
                """,
                session_id,
                json.dumps(draft),
            )
        return int(result.split()[-1]) > 0

    async def commit_ballot(self, ballot: Ballot) -> Ballot:
        with _translate_errors("commit_ballot"):
            async with self.conn.transaction():
                row = await self.conn.fetchrow(
                    """
                    INSERT INTO ballots (
                        id, session_id, election_id, voter_hash, position_votes,
                        submitted_at, integrity_hash, verification_code
                    )
                    VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8)
                    ON CONFLICT DO NOTHING
                    RETURNING *
                    """,
                    ballot.id,
                    ballot.session_id,
                    ballot.election_id,
                    ballot.voter_hash,
                    json.dumps([pv.to_dict() for pv in ballot.position_votes]),
                    ballot.submitted_at,
                    ballot.integrity_hash,
                    ballot.verification_code,
                )

                if row is None:
                    existing = await self.conn.fetchrow(
                        "SELECT * FROM ballots WHERE session_id = $1",
                        ballot.session_id,
                    )
                    if existing is not None:
                        return _parse_ballot_row(existing)
                    raise AlreadyVoted()

                updated = await self.conn.execute(
                    """
                    UPDATE voting_sessions
                    SET status = 'submitted', submitted_at = $2,
                        last_activity_at = $2, draft = NULL
                    WHERE id = $1 AND status = 'active'
                    """,
                    ballot.session_id,
                    ballot.submitted_at,
                )
                if int(updated.split()[-1]) == 0:
                    # Raising inside the transaction rolls back the ballot insert
                    raise ConcurrentSubmissionConflict()

        return _parse_ballot_row(row)

    async def has_ballot(self, election_id: str, voter_hash: str) -> bool:
        with _translate_errors("has_ballot"):
            result = await self.conn.fetchval(
                "SELECT 1 FROM ballots WHERE election_id = $1 AND voter_hash = $2",
                election_id,
                voter_hash,
            )
        return result is not None

    async def get_ballot_by_session(self, session_id: str) -> Ballot | None:
        with _translate_errors("get_ballot_by_session"):
            row = await self.conn.fetchrow(
                "SELECT * FROM ballots WHERE session_id = $1",
                session_id,
            )
        return _parse_ballot_row(row)

    async def get_ballot_by_verification_code(self, verification_code: str) -> Ballot | None:
        with _translate_errors("get_ballot_by_verification_code"):
            row = await self.conn.fetchrow(
                "SELECT * FROM ballots WHERE verification_code = $1",
                verification_code,
            )
        return _parse_ballot_row(row)

    async def list_ballots_for_voter(self, voter_id: str) -> list[Ballot]:
        with _translate_errors("list_ballots_for_voter"):
            rows = await self.conn.fetch(
                """
                SELECT b.* FROM ballots b
                JOIN voting_sessions s ON s.id = b.session_id
                WHERE s.voter_id = $1
                ORDER BY b.submitted_at DESC
                """,
                voter_id,
            )
        return [_parse_ballot_row(row) for row in rows]


# ============================================
# IN-MEMORY STORE
# ============================================


class InMemoryVotingStore:
    """In-memory implementation of ``VotingStore`` for tests and local runs.

    Each conditional write checks and mutates without awaiting, so under
    asyncio it is as atomic as the single SQL statement it stands in for.
    Not thread-safe.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, VotingSession] = {}
        self._voter_hashes: dict[str, str] = {}
        self._drafts: dict[str, dict[str, Any]] = {}
        # Key: (election_id, voter_hash)
        self._ballots: dict[tuple[str, str], Ballot] = {}

    def add_session(self, session: VotingSession, voter_hash: str) -> None:
        """Seed a session directly, bypassing the live-session constraint.

        Lets tests reproduce states that only arise from races between
        processes, such as two live sessions for one voter.
        """
        self._sessions[session.id] = session
        self._voter_hashes[session.id] = voter_hash
        self._drafts[session.id] = {}

    @property
    def ballots(self) -> list[Ballot]:
        return list(self._ballots.values())

    async def get_session(self, session_id: str) -> VotingSession | None:
        return self._sessions.get(session_id)

    async def find_live_session(self, election_id: str, voter_id: str) -> VotingSession | None:
        for session in self._sessions.values():
            if (
                session.election_id == election_id
                and session.voter_id == voter_id
                and session.is_live
            ):
                return session
        return None

    async def insert_session(self, session: VotingSession, voter_hash: str) -> VotingSession | None:
        if (session.election_id, voter_hash) in self._ballots:
            return None
        if await self.find_live_session(session.election_id, session.voter_id):
            return None
        self.add_session(session, voter_hash)
        return session

    async def expire_stale_sessions(self, election_id: str, voter_id: str, now: datetime) -> int:
        count = 0
        for session in list(self._sessions.values()):
            if (
                session.election_id == election_id
                and session.voter_id == voter_id
                and session.is_live
                and session.has_expired(now)
            ):
                self._sessions[session.id] = replace(session, status=SessionStatus.EXPIRED)
                self._drafts.pop(session.id, None)
                count += 1
        return count

    async def transition_session(
        self,
        session_id: str,
        from_statuses: Sequence[SessionStatus],
        to_status: SessionStatus,
    ) -> VotingSession | None:
        session = self._sessions.get(session_id)
        if session is None or session.status not in from_statuses:
            return None
        updated = replace(session, status=to_status)
        self._sessions[session_id] = updated
        if to_status != SessionStatus.ACTIVE:
            self._drafts.pop(session_id, None)
        return updated

    async def touch_session(self, session_id: str, now: datetime) -> None:
        session = self._sessions.get(session_id)
        if session and session.status == SessionStatus.ACTIVE:
            self._sessions[session_id] = replace(session, last_activity_at=now)

    async def update_expiry(self, session_id: str, expires_at: datetime) -> VotingSession | None:
        session = self._sessions.get(session_id)
        if session is None or session.status != SessionStatus.ACTIVE:
            return None
        updated = replace(session, expires_at=expires_at)
        self._sessions[session_id] = updated
        return updated

    async def load_draft(self, session_id: str) -> dict[str, Any] | None:
        draft = self._drafts.get(session_id)
        return json.loads(json.dumps(draft)) if draft is not None else None

    async def save_draft(self, session_id: str, draft: dict[str, Any]) -> bool:
        session = self._sessions.get(session_id)
        if session is None or session.status != SessionStatus.ACTIVE:
            return False
        self._drafts[session_id] = json.loads(json.dumps(draft))
        return True

    async def commit_ballot(self, ballot: Ballot) -> Ballot:
        for existing in self._ballots.values():
            if existing.session_id == ballot.session_id:
                return existing
        if (ballot.election_id, ballot.voter_hash) in self._ballots:
            raise AlreadyVoted()

        session = self._sessions.get(ballot.session_id)
        if session is None or session.status != SessionStatus.ACTIVE:
            raise ConcurrentSubmissionConflict()

        self._ballots[(ballot.election_id, ballot.voter_hash)] = ballot
        self._sessions[session.id] = replace(
            session,
            status=SessionStatus.SUBMITTED,
            submitted_at=ballot.submitted_at,
            last_activity_at=ballot.submitted_at,
        )
        self._drafts.pop(session.id, None)
        return ballot

    async def has_ballot(self, election_id: str, voter_hash: str) -> bool:
        return (election_id, voter_hash) in self._ballots

    async def get_ballot_by_session(self, session_id: str) -> Ballot | None:
        for ballot in self._ballots.values():
            if ballot.session_id == session_id:
                return ballot
        return None

    async def get_ballot_by_verification_code(self, verification_code: str) -> Ballot | None:
        for ballot in self._ballots.values():
            if ballot.verification_code == verification_code:
                return ballot
        return None

    async def list_ballots_for_voter(self, voter_id: str) -> list[Ballot]:
        return [
            ballot
            for ballot in self._ballots.values()
            if self._sessions[ballot.session_id].voter_id == voter_id
        ]


# ============================================
# HELPER FUNCTIONS
# ============================================


def _load_json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _parse_session_row(row: asyncpg.Record | None) -> VotingSession | None:
    """Parse a voting_sessions row."""
    if not row:
        return None

    return VotingSession(
        id=str(row["id"]),
        election_id=str(row["election_id"]),
        voter_id=str(row["voter_id"]),
        status=SessionStatus(row["status"]),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        submitted_at=row["submitted_at"],
        last_activity_at=row["last_activity_at"],
        ip_address=str(row["ip_address"]) if row["ip_address"] else None,
        user_agent=row["user_agent"],
        device_fingerprint=row["device_fingerprint"],
    )


def _parse_ballot_row(row: asyncpg.Record | None) -> Ballot | None:
    """Parse a ballots row."""
    if not row:
        return None

    return Ballot(
        id=str(row["id"]),
        session_id=str(row["session_id"]),
        election_id=str(row["election_id"]),
        voter_hash=row["voter_hash"],
        position_votes=tuple(
            PositionVote.from_dict(pv) for pv in _load_json(row["position_votes"]) or []
        ),
        submitted_at=row["submitted_at"],
        integrity_hash=row["integrity_hash"],
        verification_code=row["verification_code"],
    )
