"""Voting session API routes."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from app.api.deps import get_current_voter, get_session_manager, get_submission_coordinator
from app.core.responses import success_response
from app.services.ballot import DraftMutation, MutationAction
from app.services.submission import SubmissionCoordinator
from app.services.voting_sessions import SessionManager

router = APIRouter(prefix="/voting", tags=["Voting"])


# ============================================
# PYDANTIC MODELS
# ============================================


class StartSessionRequest(BaseModel):
    """Start voting session request model."""

    election_id: UUID
    device_fingerprint: str | None = Field(None, max_length=255)


class DraftMutationRequest(BaseModel):
    """Single ballot edit request model."""

    action: MutationAction
    position_id: str = Field(..., min_length=1)
    candidate_id: str | None = None
    abstain: bool = True


class ExtendSessionRequest(BaseModel):
    """Extend session request model."""

    extension_minutes: int | None = Field(None, ge=1)


# ============================================
# SESSION ENDPOINTS
# ============================================


@router.post("/sessions", status_code=201)
async def start_session(
    request: StartSessionRequest,
    req: Request,
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
    voter_id: Annotated[str, Depends(get_current_voter)],
):
    """
    Start (or resume) a voting session for an election.

    Returns the live session if the voter already has one.
    """
    session = await sessions.create_session(
        str(request.election_id),
        voter_id,
        ip_address=req.client.host if req.client else None,
        user_agent=req.headers.get("user-agent"),
        device_fingerprint=request.device_fingerprint,
    )
    draft = await sessions.get_draft(session.id, voter_id)

    return success_response(
        data={"session": session.to_dict(), "draft": draft.snapshot()},
        message="Voting session started",
    )


@router.get("/sessions/{session_id}")
async def get_session(
    session_id: UUID,
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
    voter_id: Annotated[str, Depends(get_current_voter)],
):
    """Get voting session details."""
    session = await sessions.get_session(str(session_id), voter_id)
    return success_response(data=session.to_dict())


@router.put("/sessions/{session_id}/extend")
async def extend_session(
    session_id: UUID,
    request: ExtendSessionRequest,
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
    voter_id: Annotated[str, Depends(get_current_voter)],
):
    """Extend a voting session, up to the election's end."""
    session = await sessions.extend_session(
        str(session_id), voter_id, minutes=request.extension_minutes
    )
    return success_response(data=session.to_dict(), message="Voting session extended")


@router.put("/sessions/{session_id}/cancel")
async def cancel_session(
    session_id: UUID,
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
    voter_id: Annotated[str, Depends(get_current_voter)],
):
    """End a voting session without submitting."""
    session = await sessions.cancel(str(session_id), voter_id)
    return success_response(data=session.to_dict(), message="Voting session ended")


# ============================================
# DRAFT ENDPOINTS
# ============================================


@router.get("/sessions/{session_id}/draft")
async def get_draft(
    session_id: UUID,
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
    voter_id: Annotated[str, Depends(get_current_voter)],
):
    """Get the current ballot draft and its completion status."""
    draft = await sessions.get_draft(str(session_id), voter_id)
    return success_response(data=draft.snapshot())


@router.patch("/sessions/{session_id}/draft")
async def update_draft(
    session_id: UUID,
    request: DraftMutationRequest,
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
    voter_id: Annotated[str, Depends(get_current_voter)],
):
    """
    Apply one edit to the ballot draft.

    Returns the updated draft with per-position completion status.
    """
    mutation = DraftMutation(
        action=request.action,
        position_id=request.position_id,
        candidate_id=request.candidate_id,
        abstain=request.abstain,
    )
    draft = await sessions.mutate_draft(str(session_id), mutation, voter_id)
    return success_response(data=draft.snapshot())


@router.post("/sessions/{session_id}/validate")
async def validate_ballot(
    session_id: UUID,
    coordinator: Annotated[SubmissionCoordinator, Depends(get_submission_coordinator)],
    voter_id: Annotated[str, Depends(get_current_voter)],
):
    """Check whether the draft would be accepted, without submitting it."""
    result = await coordinator.validate(str(session_id), voter_id)
    return success_response(data=result)


@router.post("/sessions/{session_id}/submit")
async def submit_ballot(
    session_id: UUID,
    coordinator: Annotated[SubmissionCoordinator, Depends(get_submission_coordinator)],
    voter_id: Annotated[str, Depends(get_current_voter)],
):
    """
    Submit the ballot.

    Safe to retry: a repeated submit for the same session returns the
    original receipt.
    """
    receipt = await coordinator.submit(str(session_id), voter_id)
    return success_response(data=receipt.to_dict(), message="Vote cast successfully")


# ============================================
# BALLOT, STATUS & RECEIPTS
# ============================================


@router.get("/elections/{election_id}/ballot")
async def get_election_ballot(
    election_id: UUID,
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
    voter_id: Annotated[str, Depends(get_current_voter)],
):
    """
    Get the ballot for an open election.

    Positions in ballot order with their selection limits and approved
    candidates.
    """
    ballot = await sessions.get_ballot(str(election_id))
    return success_response(data=ballot)


@router.get("/history")
async def get_voting_history(
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
    voter_id: Annotated[str, Depends(get_current_voter)],
):
    """List the current voter's receipts, newest first."""
    history = await sessions.get_voting_history(voter_id)
    return success_response(data=history)


@router.get("/elections/{election_id}/status")
async def get_voting_status(
    election_id: UUID,
    sessions: Annotated[SessionManager, Depends(get_session_manager)],
    voter_id: Annotated[str, Depends(get_current_voter)],
):
    """Check if the current voter has voted, and whether a session is open."""
    result = await sessions.get_voting_status(str(election_id), voter_id)
    return success_response(data=result)


@router.get("/receipts/{verification_code}")
async def verify_receipt(
    verification_code: str,
    coordinator: Annotated[SubmissionCoordinator, Depends(get_submission_coordinator)],
):
    """Verify a receipt code. Reveals no vote content."""
    result = await coordinator.verify_receipt(verification_code)
    return success_response(data=result)
