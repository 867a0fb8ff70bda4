"""Voting protocol error taxonomy.

Every failure the voting protocol can surface to a caller is a subclass of
``VotingError``. Each carries a stable machine-readable ``code`` and the HTTP
status the API layer renders it with, so routes never translate errors by
hand.
"""

from typing import Any

from fastapi import status


class VotingError(Exception):
    """Base class for voting protocol errors."""

    code = "VOTING_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Voting request failed"

    def __init__(self, message: str | None = None, details: Any = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Render as the standard error envelope."""
        errors: dict[str, Any] = {"code": self.code}
        if self.details is not None:
            errors["details"] = self.details
        return {
            "success": False,
            "message": self.message,
            "data": None,
            "errors": errors,
        }


class ElectionNotOpen(VotingError):
    code = "ELECTION_NOT_OPEN"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Election is not open for voting"


class AlreadyVoted(VotingError):
    code = "ALREADY_VOTED"
    status_code = status.HTTP_409_CONFLICT
    default_message = "You have already voted in this election"


class SessionNotFound(VotingError):
    code = "SESSION_NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Voting session not found"


class SessionExpired(VotingError):
    code = "SESSION_EXPIRED"
    status_code = status.HTTP_410_GONE
    default_message = "Your voting session has expired. Please start a new session."


class InvalidSelection(VotingError):
    code = "INVALID_SELECTION"
    status_code = 422
    default_message = "Invalid selection"


class IncompleteBallot(VotingError):
    code = "INCOMPLETE_BALLOT"
    status_code = 422
    default_message = "Ballot is incomplete"


class ConcurrentSubmissionConflict(VotingError):
    code = "CONCURRENT_SUBMISSION"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Another submission for this ballot is already in progress or complete"


class PersistenceFailure(VotingError):
    code = "PERSISTENCE_FAILURE"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Could not record your ballot. Please retry."
