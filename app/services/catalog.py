"""Position catalog: read-only snapshot of an election's ballot.

The catalog is owned by the election administration side of the system.
This module only reads it, through a ``CatalogSource``, and never caches a
snapshot across requests.
"""

from typing import Any, Protocol

import asyncpg

from app.core.errors import ElectionNotOpen, InvalidSelection
from app.models.voting import (
    Candidate,
    CandidateStatus,
    Election,
    ElectionStatus,
    Position,
)


class CatalogSource(Protocol):
    """Where elections, positions and approved candidates come from."""

    async def get_election(self, election_id: str) -> Election | None:
        """Election with its positions in display order, or None."""
        ...

    async def get_approved_candidates(self, election_id: str) -> list[Candidate]:
        """APPROVED candidates across all positions of the election."""
        ...


class PositionCatalog:
    """Snapshot of one election's positions and approved candidates.

    Positions and candidates are keyed by id; ordering is only used when
    producing the final ballot.
    """

    def __init__(self, election: Election, candidates: list[Candidate]) -> None:
        self.election = election
        self._positions: dict[str, Position] = {p.id: p for p in election.positions}
        self._order: list[str] = [
            p.id
            for p in sorted(election.positions, key=lambda p: p.display_order)
        ]
        self._eligible: dict[str, dict[str, Candidate]] = {pid: {} for pid in self._positions}
        for candidate in sorted(candidates, key=lambda c: c.display_order):
            if candidate.status != CandidateStatus.APPROVED:
                continue
            if candidate.position_id in self._eligible:
                self._eligible[candidate.position_id][candidate.id] = candidate

    @property
    def election_id(self) -> str:
        return self.election.id

    @property
    def allow_abstain(self) -> bool:
        return self.election.allow_abstain

    @property
    def positions(self) -> list[Position]:
        """Positions in ballot order."""
        return [self._positions[pid] for pid in self._order]

    def has_position(self, position_id: str) -> bool:
        return position_id in self._positions

    def get_position(self, position_id: str) -> Position:
        try:
            return self._positions[position_id]
        except KeyError:
            raise InvalidSelection(
                f"Position {position_id} is not part of this election",
                details={"position_id": position_id},
            ) from None

    def eligible_candidate_ids(self, position_id: str) -> list[str]:
        return list(self._eligible.get(position_id, {}))

    def is_selectable(self, position_id: str, candidate_id: str) -> bool:
        return candidate_id in self._eligible.get(position_id, {})

    def eligible_candidates(self, position_id: str) -> list[Candidate]:
        return list(self._eligible.get(position_id, {}).values())

    def candidate_rank(self, position_id: str, candidate_id: str) -> int:
        """Display rank of a candidate within its position."""
        ids = self.eligible_candidate_ids(position_id)
        return ids.index(candidate_id) if candidate_id in ids else len(ids)

    def to_ballot_dict(self) -> dict[str, Any]:
        """Voter-facing ballot: positions in order, approved candidates only."""
        return {
            "election_id": self.election_id,
            "title": self.election.title,
            "allow_abstain": self.allow_abstain,
            "end_date": self.election.end_date,
            "positions": [
                {
                    "id": position.id,
                    "name": position.name,
                    "max_selections": position.max_selections,
                    "required": position.required,
                    "candidates": [
                        {"id": c.id, "name": c.name}
                        for c in self.eligible_candidates(position.id)
                    ],
                }
                for position in self.positions
            ],
        }


async def load_catalog(source: CatalogSource, election_id: str) -> PositionCatalog:
    """Fetch a fresh catalog snapshot.

    Raises:
        ElectionNotOpen: if the election does not exist.
    """
    election = await source.get_election(election_id)
    if election is None:
        raise ElectionNotOpen("Election not found", details={"election_id": election_id})
    candidates = await source.get_approved_candidates(election_id)
    return PositionCatalog(election, candidates)


# ============================================
# POSTGRES SOURCE
# ============================================


class PostgresCatalogSource:
    """Reads the catalog tables maintained by election administration."""

    def __init__(self, conn: asyncpg.Connection) -> None:
        self.conn = conn

    async def get_election(self, election_id: str) -> Election | None:
        row = await self.conn.fetchrow(
            """
            SELECT id, title, status, start_date, end_date, allow_abstain
            FROM elections
            WHERE id = $1 AND deleted = FALSE
            """,
            election_id,
        )
        if not row:
            return None

        positions = await self.conn.fetch(
            """
            SELECT id, title, max_selections, required, display_order
            FROM election_positions
            WHERE election_id = $1
            ORDER BY display_order ASC, created_at ASC
            """,
            election_id,
        )
        return Election(
            id=str(row["id"]),
            title=row["title"],
            status=ElectionStatus(row["status"]),
            start_date=row["start_date"],
            end_date=row["end_date"],
            allow_abstain=row["allow_abstain"],
            positions=tuple(_parse_position_row(p) for p in positions),
        )

    async def get_approved_candidates(self, election_id: str) -> list[Candidate]:
        rows = await self.conn.fetch(
            """
            SELECT c.id, c.position_id, c.name, c.status, c.display_order
            FROM candidates c
            JOIN election_positions p ON c.position_id = p.id
            WHERE p.election_id = $1 AND c.status = $2
            ORDER BY p.display_order ASC, c.display_order ASC
            """,
            election_id,
            CandidateStatus.APPROVED.value,
        )
        return [_parse_candidate_row(row) for row in rows]


def _parse_position_row(row: asyncpg.Record) -> Position:
    return Position(
        id=str(row["id"]),
        name=row["title"],
        max_selections=row["max_selections"],
        required=row["required"],
        display_order=row["display_order"] or 0,
    )


def _parse_candidate_row(row: asyncpg.Record) -> Candidate:
    return Candidate(
        id=str(row["id"]),
        position_id=str(row["position_id"]),
        name=row["name"],
        status=CandidateStatus(row["status"]),
        display_order=row["display_order"] or 0,
    )


# ============================================
# IN-MEMORY SOURCE
# ============================================


class InMemoryCatalogSource:
    """In-memory catalog for tests and local runs.

    Candidate status can be changed between calls to simulate an
    administrator disqualifying someone mid-election.
    """

    def __init__(self) -> None:
        self._elections: dict[str, Election] = {}
        self._candidates: dict[str, Candidate] = {}

    def add_election(self, election: Election) -> None:
        self._elections[election.id] = election

    def add_candidate(self, candidate: Candidate) -> None:
        self._candidates[candidate.id] = candidate

    def set_candidate_status(self, candidate_id: str, status: CandidateStatus) -> None:
        old = self._candidates[candidate_id]
        self._candidates[candidate_id] = Candidate(
            id=old.id,
            position_id=old.position_id,
            name=old.name,
            status=status,
            display_order=old.display_order,
        )

    async def get_election(self, election_id: str) -> Election | None:
        return self._elections.get(election_id)

    async def get_approved_candidates(self, election_id: str) -> list[Candidate]:
        election = self._elections.get(election_id)
        if election is None:
            return []
        position_ids = {p.id for p in election.positions}
        return [
            c
            for c in self._candidates.values()
            if c.position_id in position_ids and c.status == CandidateStatus.APPROVED
        ]
