"""Voting protocol value types."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ElectionStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CandidateStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISQUALIFIED = "disqualified"
    WITHDRAWN = "withdrawn"


class SessionStatus(str, Enum):
    CREATED = "created"
    ACTIVE = "active"
    SUBMITTED = "submitted"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.SUBMITTED, SessionStatus.EXPIRED, SessionStatus.CANCELLED)


# Sessions that count against the one-live-session-per-voter rule
LIVE_SESSION_STATUSES = (SessionStatus.CREATED, SessionStatus.ACTIVE)


@dataclass(frozen=True)
class Candidate:
    id: str
    position_id: str
    name: str = ""
    status: CandidateStatus = CandidateStatus.APPROVED
    display_order: int = 0


@dataclass(frozen=True)
class Position:
    id: str
    name: str
    max_selections: int = 1
    required: bool = True
    display_order: int = 0

    def __post_init__(self) -> None:
        if self.max_selections < 1:
            raise ValueError(f"Position {self.id} must allow at least one selection")


@dataclass(frozen=True)
class Election:
    id: str
    title: str
    status: ElectionStatus
    start_date: datetime
    end_date: datetime
    positions: tuple[Position, ...] = ()
    allow_abstain: bool = True

    def is_open(self, now: datetime) -> bool:
        """Whether ballots may be cast at ``now``."""
        return (
            self.status == ElectionStatus.ACTIVE
            and self.start_date <= now <= self.end_date
        )


@dataclass(frozen=True)
class PositionVote:
    """Finalized choice for one position, in wire/storage form."""

    position_id: str
    candidate_ids: tuple[str, ...] = ()
    abstain: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "position_id": self.position_id,
            "candidate_ids": list(self.candidate_ids),
            "abstain": self.abstain,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PositionVote":
        return cls(
            position_id=str(data["position_id"]),
            candidate_ids=tuple(str(c) for c in data.get("candidate_ids") or ()),
            abstain=bool(data.get("abstain", False)),
        )


@dataclass(frozen=True)
class VotingSession:
    id: str
    election_id: str
    voter_id: str
    status: SessionStatus
    created_at: datetime
    expires_at: datetime
    submitted_at: datetime | None = None
    last_activity_at: datetime | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    device_fingerprint: str | None = None

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_SESSION_STATUSES

    def has_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def to_dict(self) -> dict[str, Any]:
        """Public representation; client metadata is not echoed back."""
        return {
            "id": self.id,
            "election_id": self.election_id,
            "status": self.status.value,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "submitted_at": self.submitted_at,
            "last_activity_at": self.last_activity_at,
        }


@dataclass(frozen=True)
class Receipt:
    """Proof of submission. Carries no vote content."""

    ballot_id: str
    submitted_at: datetime
    verification_code: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Ballot:
    id: str
    session_id: str
    election_id: str
    voter_hash: str
    position_votes: tuple[PositionVote, ...]
    submitted_at: datetime
    integrity_hash: str = ""
    verification_code: str = ""

    def to_record(self) -> dict[str, Any]:
        """Shape consumed by downstream result computation."""
        return {
            "id": self.id,
            "election_id": self.election_id,
            "position_votes": [pv.to_dict() for pv in self.position_votes],
            "submitted_at": self.submitted_at,
        }

    def receipt(self) -> Receipt:
        return Receipt(
            ballot_id=self.id,
            submitted_at=self.submitted_at,
            verification_code=self.verification_code,
        )


@dataclass
class PositionChoice:
    """A voter's in-progress choice for one position.

    Either a list of selected candidates or an abstention, never both.
    """

    candidate_ids: list[str] = field(default_factory=list)
    abstain: bool = False

    @property
    def is_complete(self) -> bool:
        return bool(self.candidate_ids) or self.abstain

    def to_dict(self) -> dict[str, Any]:
        return {"candidate_ids": list(self.candidate_ids), "abstain": self.abstain}
