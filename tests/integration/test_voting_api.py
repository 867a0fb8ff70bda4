"""
Integration tests for the voting API endpoints.
"""

import pytest

from app.models.voting import ElectionStatus
from conftest import (
    ELECTION_ID,
    PRESIDENT,
    PRESIDENT_CANDIDATES,
    SENATE,
    SENATE_CANDIDATES,
    build_election,
)

AMA, KOFI, _ = PRESIDENT_CANDIDATES
ABENA, ESI, KWAME = SENATE_CANDIDATES


async def start_session(async_client, headers) -> str:
    response = await async_client.post(
        "/voting/sessions", json={"election_id": ELECTION_ID}, headers=headers
    )
    assert response.status_code == 201
    return response.json()["data"]["session"]["id"]


async def edit(async_client, headers, session_id, **body):
    return await async_client.patch(
        f"/voting/sessions/{session_id}/draft", json=body, headers=headers
    )


class TestVotingAPI:
    """Test voting API endpoints."""

    @pytest.mark.asyncio
    async def test_health_check(self, async_client):
        response = await async_client.get("/health")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["checks"]["api"]["status"] == "healthy"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"] == "no-store"

    @pytest.mark.asyncio
    async def test_requires_authentication(self, async_client):
        response = await async_client.post(
            "/voting/sessions", json={"election_id": ELECTION_ID}
        )

        assert response.status_code in (401, 403)
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_rejects_invalid_token(self, async_client):
        response = await async_client.post(
            "/voting/sessions",
            json={"election_id": ELECTION_ID},
            headers={"Authorization": "Bearer not-a-jwt"},
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_full_voting_flow(self, async_client, auth_headers):
        response = await async_client.post(
            "/voting/sessions",
            json={"election_id": ELECTION_ID, "device_fingerprint": "fp-123"},
            headers={**auth_headers, "User-Agent": "ballot-test"},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        session_id = body["data"]["session"]["id"]
        assert body["data"]["session"]["status"] == "active"
        assert body["data"]["draft"]["completion"]["ballot_complete"] is False

        response = await edit(
            async_client, auth_headers, session_id,
            action="set_selection", position_id=PRESIDENT, candidate_id=AMA,
        )
        assert response.status_code == 200
        assert response.json()["data"]["completion"]["positions"][PRESIDENT] is True

        response = await edit(
            async_client, auth_headers, session_id, action="set_abstain", position_id=SENATE
        )
        assert response.json()["data"]["completion"]["ballot_complete"] is True

        response = await async_client.post(
            f"/voting/sessions/{session_id}/validate", headers=auth_headers
        )
        assert response.json()["data"]["valid"] is True

        response = await async_client.post(
            f"/voting/sessions/{session_id}/submit", headers=auth_headers
        )
        assert response.status_code == 200
        receipt = response.json()["data"]
        assert set(receipt) == {"ballot_id", "submitted_at", "verification_code"}

        response = await async_client.get(f"/voting/receipts/{receipt['verification_code']}")
        assert response.json()["data"]["verified"] is True

        response = await async_client.get(
            f"/voting/elections/{ELECTION_ID}/status", headers=auth_headers
        )
        assert response.json()["data"]["has_voted"] is True

        response = await async_client.post(
            "/voting/sessions", json={"election_id": ELECTION_ID}, headers=auth_headers
        )
        assert response.status_code == 409
        assert response.json()["errors"]["code"] == "ALREADY_VOTED"

    @pytest.mark.asyncio
    async def test_resubmit_returns_same_receipt(self, async_client, auth_headers):
        session_id = await start_session(async_client, auth_headers)
        await edit(
            async_client, auth_headers, session_id,
            action="set_selection", position_id=PRESIDENT, candidate_id=KOFI,
        )
        await edit(
            async_client, auth_headers, session_id,
            action="set_selection", position_id=SENATE, candidate_id=ESI,
        )

        first = await async_client.post(
            f"/voting/sessions/{session_id}/submit", headers=auth_headers
        )
        second = await async_client.post(
            f"/v1/voting/sessions/{session_id}/submit", headers=auth_headers
        )

        assert first.status_code == second.status_code == 200
        assert first.json()["data"] == second.json()["data"]

    @pytest.mark.asyncio
    async def test_invalid_selection(self, async_client, auth_headers):
        session_id = await start_session(async_client, auth_headers)
        for candidate in (ABENA, ESI):
            await edit(
                async_client, auth_headers, session_id,
                action="set_selection", position_id=SENATE, candidate_id=candidate,
            )

        response = await edit(
            async_client, auth_headers, session_id,
            action="set_selection", position_id=SENATE, candidate_id=KWAME,
        )

        assert response.status_code == 422
        assert response.json()["errors"]["code"] == "INVALID_SELECTION"

        draft = await async_client.get(
            f"/voting/sessions/{session_id}/draft", headers=auth_headers
        )
        assert draft.json()["data"]["choices"][SENATE]["candidate_ids"] == [ABENA, ESI]

    @pytest.mark.asyncio
    async def test_incomplete_ballot(self, async_client, auth_headers):
        session_id = await start_session(async_client, auth_headers)
        await edit(
            async_client, auth_headers, session_id,
            action="set_selection", position_id=PRESIDENT, candidate_id=AMA,
        )

        response = await async_client.post(
            f"/voting/sessions/{session_id}/submit", headers=auth_headers
        )

        assert response.status_code == 422
        errors = response.json()["errors"]
        assert errors["code"] == "INCOMPLETE_BALLOT"
        assert errors["details"]["missing_positions"] == [SENATE]

    @pytest.mark.asyncio
    async def test_expired_session(self, async_client, auth_headers, clock):
        session_id = await start_session(async_client, auth_headers)
        clock.advance(minutes=31)

        response = await async_client.get(
            f"/voting/sessions/{session_id}/draft", headers=auth_headers
        )

        assert response.status_code == 410
        assert response.json()["errors"]["code"] == "SESSION_EXPIRED"

        response = await async_client.get(
            f"/voting/sessions/{session_id}", headers=auth_headers
        )
        assert response.json()["data"]["status"] == "expired"

    @pytest.mark.asyncio
    async def test_session_of_another_voter_not_found(
        self, async_client, auth_headers, other_voter_headers
    ):
        session_id = await start_session(async_client, auth_headers)

        response = await async_client.get(
            f"/voting/sessions/{session_id}", headers=other_voter_headers
        )

        assert response.status_code == 404
        assert response.json()["errors"]["code"] == "SESSION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_extend_and_cancel(self, async_client, auth_headers):
        session_id = await start_session(async_client, auth_headers)

        response = await async_client.put(
            f"/voting/sessions/{session_id}/extend",
            json={"extension_minutes": 10},
            headers=auth_headers,
        )
        assert response.status_code == 200

        response = await async_client.put(
            f"/voting/sessions/{session_id}/cancel", headers=auth_headers
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "cancelled"

        response = await async_client.post(
            f"/voting/sessions/{session_id}/submit", headers=auth_headers
        )
        assert response.status_code == 410

    @pytest.mark.asyncio
    async def test_election_not_open(self, async_client, auth_headers):
        response = await async_client.post(
            "/voting/sessions",
            json={"election_id": "00000000-0000-0000-0000-000000000000"},
            headers=auth_headers,
        )

        assert response.status_code == 409
        assert response.json()["errors"]["code"] == "ELECTION_NOT_OPEN"

    @pytest.mark.asyncio
    async def test_malformed_mutation(self, async_client, auth_headers):
        session_id = await start_session(async_client, auth_headers)

        response = await edit(
            async_client, auth_headers, session_id, action="shuffle", position_id=SENATE
        )

        assert response.status_code == 422
        assert response.json()["message"] == "Validation failed"

    @pytest.mark.asyncio
    async def test_get_ballot(self, async_client, auth_headers):
        response = await async_client.get(
            f"/voting/elections/{ELECTION_ID}/ballot", headers=auth_headers
        )

        assert response.status_code == 200
        ballot = response.json()["data"]
        assert ballot["election_id"] == ELECTION_ID
        assert [p["id"] for p in ballot["positions"]] == [PRESIDENT, SENATE]
        assert [c["id"] for c in ballot["positions"][1]["candidates"]] == [ABENA, ESI, KWAME]

    @pytest.mark.asyncio
    async def test_voting_history(self, async_client, auth_headers):
        response = await async_client.get("/voting/history", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["data"] == []

        session_id = await start_session(async_client, auth_headers)
        await edit(
            async_client, auth_headers, session_id,
            action="set_selection", position_id=PRESIDENT, candidate_id=AMA,
        )
        await edit(
            async_client, auth_headers, session_id, action="set_abstain", position_id=SENATE
        )
        submitted = await async_client.post(
            f"/voting/sessions/{session_id}/submit", headers=auth_headers
        )

        response = await async_client.get("/voting/history", headers=auth_headers)
        history = response.json()["data"]
        assert len(history) == 1
        assert history[0]["election_id"] == ELECTION_ID
        assert history[0]["verification_code"] == submitted.json()["data"]["verification_code"]

    @pytest.mark.asyncio
    async def test_election_paused_mid_session(
        self, async_client, auth_headers, catalog_source
    ):
        session_id = await start_session(async_client, auth_headers)
        await edit(
            async_client, auth_headers, session_id,
            action="set_selection", position_id=PRESIDENT, candidate_id=AMA,
        )
        catalog_source.add_election(build_election(status=ElectionStatus.PAUSED))

        edited = await edit(
            async_client, auth_headers, session_id, action="set_abstain", position_id=SENATE
        )
        submitted = await async_client.post(
            f"/voting/sessions/{session_id}/submit", headers=auth_headers
        )

        assert edited.status_code == 409
        assert edited.json()["errors"]["code"] == "ELECTION_NOT_OPEN"
        assert submitted.status_code == 409
        assert submitted.json()["errors"]["code"] == "ELECTION_NOT_OPEN"
