"""Structured logging configuration for the application."""

from datetime import UTC, datetime
import json
import logging
import sys

from app.core.config import settings


class JSONFormatter(logging.Formatter):
    """Format logs as JSON for structured logging in production."""

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON."""
        log_data = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, "extra_fields"):
            log_data.update(record.extra_fields)

        return json.dumps(log_data, default=str)


class StandardFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


def setup_logging() -> None:
    """Configure application logging based on environment."""
    log_level = logging.INFO
    if settings.ENVIRONMENT == "development":
        log_level = logging.DEBUG
    elif settings.ENVIRONMENT == "production":
        log_level = logging.WARNING

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)

    if settings.ENVIRONMENT == "production":
        formatter = JSONFormatter()
    else:
        formatter = StandardFormatter()

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
    logging.getLogger("fastapi").setLevel(logging.INFO)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name."""
    return logging.getLogger(name)


class VotingEventLogger:
    """Specialized logger for voting lifecycle events.

    Events never include vote content, only identifiers and outcomes.
    """

    def __init__(self) -> None:
        self.logger = get_logger("voting")

    def log_session_created(
        self,
        session_id: str,
        election_id: str,
        voter_id: str,
        expires_at: datetime,
        resumed: bool = False,
    ) -> None:
        """Log a voting session being opened (or handed back)."""
        self.logger.info(
            f"Voting session {'resumed' if resumed else 'created'}: {session_id}",
            extra={
                "extra_fields": {
                    "event_type": "voting_session_created",
                    "session_id": session_id,
                    "election_id": election_id,
                    "voter_id": voter_id,
                    "expires_at": expires_at.isoformat(),
                    "resumed": resumed,
                }
            },
        )

    def log_session_closed(self, session_id: str, status: str, reason: str | None = None) -> None:
        """Log a session reaching a terminal state other than submission."""
        self.logger.info(
            f"Voting session {session_id} {status}",
            extra={
                "extra_fields": {
                    "event_type": "voting_session_closed",
                    "session_id": session_id,
                    "status": status,
                    "reason": reason,
                }
            },
        )

    def log_session_refused(self, election_id: str, voter_id: str, code: str) -> None:
        """Log a refused session creation."""
        self.logger.warning(
            f"Voting session refused for election {election_id}: {code}",
            extra={
                "extra_fields": {
                    "event_type": "voting_session_refused",
                    "election_id": election_id,
                    "voter_id": voter_id,
                    "code": code,
                }
            },
        )

    def log_ballot_submitted(
        self, ballot_id: str, session_id: str, election_id: str, positions: int
    ) -> None:
        """Log a committed ballot."""
        self.logger.info(
            f"Ballot submitted: {ballot_id}",
            extra={
                "extra_fields": {
                    "event_type": "ballot_submitted",
                    "ballot_id": ballot_id,
                    "session_id": session_id,
                    "election_id": election_id,
                    "positions": positions,
                }
            },
        )

    def log_submission_rejected(self, session_id: str, code: str, message: str) -> None:
        """Log a submission attempt that did not produce a ballot."""
        self.logger.warning(
            f"Ballot submission rejected for session {session_id}: {code}",
            extra={
                "extra_fields": {
                    "event_type": "ballot_submission_rejected",
                    "session_id": session_id,
                    "code": code,
                    "reason": message,
                }
            },
        )


# Global voting event logger instance
voting_logger = VotingEventLogger()
