"""Ballot submission: the single effectful write of the voting protocol.

``SubmissionCoordinator.submit`` turns a session's draft into an immutable
ballot exactly once. It re-validates the draft against a freshly fetched
catalog, then hands the sealed ballot to the store, whose unique indexes
decide the race between concurrent submissions. Nothing here writes to the
draft, so every rejection leaves the voter free to correct and retry.
"""

import hashlib
import hmac
import json
from datetime import UTC, datetime
from typing import Any, Sequence
from uuid import uuid4

from app.core.config import Settings, get_settings
from app.core.errors import VotingError
from app.core.logging_config import VotingEventLogger, voting_logger
from app.core.security import generate_voter_hash
from app.models.voting import Ballot, PositionVote, Receipt, SessionStatus, VotingSession
from app.services.ballot import BallotDraft
from app.services.catalog import CatalogSource, load_catalog
from app.services.voting_sessions import SessionManager
from app.services.voting_store import VotingStore


# ============================================
# INTEGRITY
# ============================================


def compute_integrity_hash(
    key: bytes,
    ballot_id: str,
    election_id: str,
    session_id: str,
    voter_hash: str,
    position_votes: Sequence[PositionVote],
    submitted_at: datetime,
) -> str:
    """HMAC-SHA256 over the canonical JSON form of a ballot."""
    payload = {
        "ballot_id": ballot_id,
        "election_id": election_id,
        "session_id": session_id,
        "voter_hash": voter_hash,
        "position_votes": [pv.to_dict() for pv in position_votes],
        "submitted_at": submitted_at.astimezone(UTC).isoformat(),
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hmac.new(key, canonical.encode(), hashlib.sha256).hexdigest()


def make_verification_code(integrity_hash: str, ballot_id: str) -> str:
    """Short code printed on the receipt, formatted XXXX-XXXX-XXXX."""
    code = hashlib.sha256(f"{integrity_hash}{ballot_id}".encode()).hexdigest()[:12].upper()
    return f"{code[:4]}-{code[4:8]}-{code[8:12]}"


def normalize_verification_code(code: str) -> str:
    raw = "".join(ch for ch in code.upper() if ch.isalnum())
    return f"{raw[:4]}-{raw[4:8]}-{raw[8:12]}"


# ============================================
# COORDINATOR
# ============================================


class SubmissionCoordinator:
    """Commits a completed draft against its session exactly once."""

    def __init__(
        self,
        sessions: SessionManager,
        store: VotingStore,
        catalog_source: CatalogSource,
        settings: Settings | None = None,
        event_logger: VotingEventLogger = voting_logger,
    ) -> None:
        self.sessions = sessions
        self.store = store
        self.catalog_source = catalog_source
        self.settings = settings or get_settings()
        self.events = event_logger

    async def submit(self, session_id: str, voter_id: str | None = None) -> Receipt:
        """Submit the session's draft and return a receipt.

        Re-submitting a session whose ballot is already stored returns the
        original receipt.

        Raises:
            SessionNotFound / SessionExpired: the session cannot be used.
            ElectionNotOpen: the election was paused or closed mid-session.
            InvalidSelection: a selection is no longer eligible.
            IncompleteBallot: a required position has no choice.
            AlreadyVoted / ConcurrentSubmissionConflict: another submission won.
            PersistenceFailure: the write failed; safe to retry.
        """
        session = await self.sessions.get_session(session_id, voter_id)
        if session.status == SessionStatus.SUBMITTED:
            existing = await self.store.get_ballot_by_session(session.id)
            if existing is not None:
                return existing.receipt()

        try:
            session = await self.sessions.resume_session(session_id, voter_id)
            draft = await self._load_draft(session)
            self.sessions.ensure_election_open(draft.catalog.election)
            draft.validator.assert_valid(draft)
            ballot = self._seal(session, draft.to_position_votes())
            stored = await self.store.commit_ballot(ballot)
        except VotingError as e:
            self.events.log_submission_rejected(session_id, e.code, e.message)
            raise

        self.events.log_ballot_submitted(
            stored.id, stored.session_id, stored.election_id, len(stored.position_votes)
        )
        return stored.receipt()

    async def validate(self, session_id: str, voter_id: str | None = None) -> dict[str, Any]:
        """Dry-run the submission checks without writing anything."""
        session = await self.sessions.resume_session(session_id, voter_id)
        draft = await self._load_draft(session)
        self.sessions.ensure_election_open(draft.catalog.election)
        problems = draft.validator.validate(draft)
        return {
            "valid": not problems,
            "errors": problems,
            "completion": draft.completion_status(),
        }

    async def verify_receipt(self, verification_code: str) -> dict[str, Any]:
        """Check a receipt code against the stored ballot's integrity hash."""
        code = normalize_verification_code(verification_code)
        ballot = await self.store.get_ballot_by_verification_code(code)
        if ballot is None:
            return {"verified": False, "verification_code": code}

        expected = compute_integrity_hash(
            self.settings.integrity_key,
            ballot.id,
            ballot.election_id,
            ballot.session_id,
            ballot.voter_hash,
            ballot.position_votes,
            ballot.submitted_at,
        )
        verified = hmac.compare_digest(expected, ballot.integrity_hash) and (
            make_verification_code(ballot.integrity_hash, ballot.id) == code
        )
        return {
            "verified": verified,
            "verification_code": code,
            "ballot_id": ballot.id,
            "election_id": ballot.election_id,
            "submitted_at": ballot.submitted_at,
        }

    async def _load_draft(self, session: VotingSession) -> BallotDraft:
        # Eligibility is always judged against the catalog as it is now
        catalog = await load_catalog(self.catalog_source, session.election_id)
        data = await self.store.load_draft(session.id)
        return BallotDraft.from_dict(catalog, session.id, data)

    def _seal(self, session: VotingSession, position_votes: list[PositionVote]) -> Ballot:
        ballot_id = str(uuid4())
        submitted_at = self.sessions.clock()
        voter_hash = generate_voter_hash(session.election_id, session.voter_id)
        integrity_hash = compute_integrity_hash(
            self.settings.integrity_key,
            ballot_id,
            session.election_id,
            session.id,
            voter_hash,
            position_votes,
            submitted_at,
        )
        return Ballot(
            id=ballot_id,
            session_id=session.id,
            election_id=session.election_id,
            voter_hash=voter_hash,
            position_votes=tuple(position_votes),
            submitted_at=submitted_at,
            integrity_hash=integrity_hash,
            verification_code=make_verification_code(integrity_hash, ballot_id),
        )
