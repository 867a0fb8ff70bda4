"""Voting session lifecycle.

A voting session binds one voter to one in-progress ballot for one election.
Sessions are created directly in ACTIVE and end in exactly one of SUBMITTED,
EXPIRED or CANCELLED. Expiry is evaluated lazily whenever a session is
touched; nothing runs in the background.
"""

from dataclasses import replace
from datetime import UTC, datetime, timedelta
from typing import Any, Callable
from uuid import uuid4

from app.core.config import Settings, get_settings
from app.core.errors import (
    AlreadyVoted,
    ConcurrentSubmissionConflict,
    ElectionNotOpen,
    InvalidSelection,
    SessionExpired,
    SessionNotFound,
)
from app.core.logging_config import VotingEventLogger, voting_logger
from app.core.security import generate_voter_hash
from app.models.voting import (
    LIVE_SESSION_STATUSES,
    Election,
    ElectionStatus,
    SessionStatus,
    VotingSession,
)
from app.services.ballot import BallotDraft, DraftMutation
from app.services.catalog import CatalogSource, load_catalog
from app.services.voting_store import VotingStore

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class SessionManager:
    """Creates, resumes and closes voting sessions, and gates draft access."""

    # Attempts at the conditional insert before giving up on a racing peer
    CREATE_ATTEMPTS = 2

    def __init__(
        self,
        store: VotingStore,
        catalog_source: CatalogSource,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        event_logger: VotingEventLogger = voting_logger,
    ) -> None:
        self.store = store
        self.catalog_source = catalog_source
        self.settings = settings or get_settings()
        self.clock = clock
        self.events = event_logger

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.VOTING_SESSION_TTL_MINUTES)

    # ============================================
    # LIFECYCLE
    # ============================================

    async def create_session(
        self,
        election_id: str,
        voter_id: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        device_fingerprint: str | None = None,
    ) -> VotingSession:
        """Open a voting session for ``voter_id``.

        A voter who already holds a live, unexpired session for the election
        gets that session back.

        Raises:
            ElectionNotOpen: election missing, not ACTIVE or outside its window.
            AlreadyVoted: a ballot already exists for this voter.
        """
        now = self.clock()
        election = await self.catalog_source.get_election(election_id)
        if election is None:
            self.events.log_session_refused(election_id, voter_id, ElectionNotOpen.code)
            raise ElectionNotOpen("Election not found", details={"election_id": election_id})

        if not election.is_open(now):
            self.events.log_session_refused(election_id, voter_id, ElectionNotOpen.code)
            self.ensure_election_open(election, now)

        voter_hash = generate_voter_hash(election_id, voter_id)
        await self.store.expire_stale_sessions(election_id, voter_id, now)

        for _ in range(self.CREATE_ATTEMPTS):
            candidate = VotingSession(
                id=str(uuid4()),
                election_id=election_id,
                voter_id=voter_id,
                status=SessionStatus.ACTIVE,
                created_at=now,
                expires_at=min(election.end_date, now + self.session_ttl),
                last_activity_at=now,
                ip_address=ip_address,
                user_agent=user_agent,
                device_fingerprint=device_fingerprint,
            )
            session = await self.store.insert_session(candidate, voter_hash)
            if session is not None:
                self.events.log_session_created(
                    session.id, election_id, voter_id, session.expires_at
                )
                return session

            if await self.store.has_ballot(election_id, voter_hash):
                self.events.log_session_refused(election_id, voter_id, AlreadyVoted.code)
                raise AlreadyVoted()

            existing = await self.store.find_live_session(election_id, voter_id)
            if existing is not None and not existing.has_expired(now):
                self.events.log_session_created(
                    existing.id, election_id, voter_id, existing.expires_at, resumed=True
                )
                return existing
            if existing is not None:
                await self.store.expire_stale_sessions(election_id, voter_id, now)

        raise ConcurrentSubmissionConflict("Another voting session is being opened for you")

    def ensure_election_open(self, election: Election, now: datetime | None = None) -> None:
        """Raise ElectionNotOpen unless ballots may be cast right now.

        Checked on every write, not only at session creation: an election
        can be paused or closed while sessions are live.
        """
        now = now or self.clock()
        if election.is_open(now):
            return

        if election.status != ElectionStatus.ACTIVE:
            message = f"Election is {election.status.value}, not accepting votes"
        elif now < election.start_date:
            message = "Election has not started yet"
        else:
            message = "Election has ended"
        raise ElectionNotOpen(
            message,
            details={"election_id": election.id, "status": election.status.value},
        )

    async def get_session(self, session_id: str, voter_id: str | None = None) -> VotingSession:
        """Fetch a session in any state, enforcing ownership.

        Raises:
            SessionNotFound: unknown id, or owned by another voter.
        """
        session = await self.store.get_session(session_id)
        if session is None or (voter_id is not None and session.voter_id != voter_id):
            raise SessionNotFound(details={"session_id": session_id})
        return session

    async def resume_session(self, session_id: str, voter_id: str | None = None) -> VotingSession:
        """Return the session if it is ACTIVE and unexpired.

        An ACTIVE session past ``expires_at`` is moved to EXPIRED first.

        Raises:
            SessionNotFound: unknown id, or owned by another voter.
            SessionExpired: expired, cancelled or already submitted.
        """
        session = await self.get_session(session_id, voter_id)
        now = self.clock()

        if session.is_live and not session.has_expired(now):
            await self.store.touch_session(session.id, now)
            return replace(session, last_activity_at=now)

        if session.is_live:
            await self.expire(session.id)
            raise SessionExpired(details={"session_id": session_id})

        if session.status == SessionStatus.SUBMITTED:
            raise SessionExpired(
                "This voting session has already been submitted",
                details={"session_id": session_id, "status": session.status.value},
            )
        raise SessionExpired(details={"session_id": session_id, "status": session.status.value})

    async def expire(self, session_id: str) -> VotingSession:
        """Move a live session to EXPIRED. Idempotent."""
        return await self._close(session_id, SessionStatus.EXPIRED, reason="expired")

    async def cancel(self, session_id: str, voter_id: str | None = None) -> VotingSession:
        """Move a live session to CANCELLED. Idempotent."""
        await self.get_session(session_id, voter_id)
        return await self._close(session_id, SessionStatus.CANCELLED, reason="cancelled by voter")

    async def _close(self, session_id: str, status: SessionStatus, reason: str) -> VotingSession:
        updated = await self.store.transition_session(session_id, LIVE_SESSION_STATUSES, status)
        if updated is not None:
            self.events.log_session_closed(session_id, status.value, reason)
            return updated

        # Already terminal: report the state it ended in
        current = await self.store.get_session(session_id)
        if current is None:
            raise SessionNotFound(details={"session_id": session_id})
        return current

    async def extend_session(
        self,
        session_id: str,
        voter_id: str | None = None,
        minutes: int | None = None,
    ) -> VotingSession:
        """Push ``expires_at`` forward, never past the election end.

        Raises:
            InvalidSelection: non-positive extension.
            SessionExpired / SessionNotFound: as for ``resume_session``.
        """
        limit = self.settings.VOTING_SESSION_MAX_EXTENSION_MINUTES
        minutes = limit if minutes is None else min(minutes, limit)
        if minutes <= 0:
            raise InvalidSelection("Extension must be a positive number of minutes")

        session = await self.resume_session(session_id, voter_id)
        election = await self.catalog_source.get_election(session.election_id)
        end_date = election.end_date if election else session.expires_at

        expires_at = min(session.expires_at + timedelta(minutes=minutes), end_date)
        updated = await self.store.update_expiry(session.id, expires_at)
        if updated is None:
            raise SessionExpired(details={"session_id": session_id})
        return updated

    async def get_voting_status(self, election_id: str, voter_id: str) -> dict[str, Any]:
        """Whether the voter has voted, and their live session if any."""
        has_voted = await self.store.has_ballot(
            election_id, generate_voter_hash(election_id, voter_id)
        )
        session = await self.store.find_live_session(election_id, voter_id)
        if session is not None and session.has_expired(self.clock()):
            await self.expire(session.id)
            session = None

        return {
            "election_id": election_id,
            "has_voted": has_voted,
            "session_id": session.id if session else None,
            "expires_at": session.expires_at if session else None,
        }

    async def get_ballot(self, election_id: str) -> dict[str, Any]:
        """Positions and selectable candidates a voter chooses from.

        Raises:
            ElectionNotOpen: election missing or not accepting votes.
        """
        catalog = await load_catalog(self.catalog_source, election_id)
        self.ensure_election_open(catalog.election)
        return catalog.to_ballot_dict()

    async def get_voting_history(self, voter_id: str) -> list[dict[str, Any]]:
        """Receipts for every ballot the voter has cast, newest first."""
        ballots = await self.store.list_ballots_for_voter(voter_id)
        history = []
        for ballot in sorted(ballots, key=lambda b: b.submitted_at, reverse=True):
            election = await self.catalog_source.get_election(ballot.election_id)
            history.append(
                {
                    "election_id": ballot.election_id,
                    "election_title": election.title if election else None,
                    **ballot.receipt().to_dict(),
                }
            )
        return history

    # ============================================
    # DRAFT ACCESS
    # ============================================

    async def get_draft(self, session_id: str, voter_id: str | None = None) -> BallotDraft:
        """Load the session's draft against a fresh catalog snapshot."""
        session = await self.resume_session(session_id, voter_id)
        catalog = await load_catalog(self.catalog_source, session.election_id)
        data = await self.store.load_draft(session.id)
        return BallotDraft.from_dict(catalog, session.id, data)

    async def mutate_draft(
        self,
        session_id: str,
        mutation: DraftMutation,
        voter_id: str | None = None,
    ) -> BallotDraft:
        """Apply one mutation and persist the draft.

        A rejected mutation raises before anything is written, so the stored
        draft is unchanged.
        """
        draft = await self.get_draft(session_id, voter_id)
        self.ensure_election_open(draft.catalog.election)
        mutation.apply(draft)
        if not await self.store.save_draft(session_id, draft.to_dict()):
            raise SessionExpired(details={"session_id": session_id})
        return draft
