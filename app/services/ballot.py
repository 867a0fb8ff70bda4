"""Ballot drafts and selection validation.

A ``BallotDraft`` is the voter's in-progress set of choices for one session.
Every rule about what a legal choice is lives in ``SelectionValidator``; the
draft only applies mutations the validator accepts. Positions are always
addressed by id, so voters may fill the ballot in any order.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any

from app.core.errors import IncompleteBallot, InvalidSelection
from app.models.voting import PositionChoice, PositionVote
from app.services.catalog import PositionCatalog


class SelectionValidator:
    """Per-position legality checks against a catalog snapshot."""

    def __init__(self, catalog: PositionCatalog) -> None:
        self.catalog = catalog

    def check_candidate(self, position_id: str, candidate_id: str) -> None:
        """Raise InvalidSelection unless the candidate is APPROVED for the position."""
        self.catalog.get_position(position_id)
        if not self.catalog.is_selectable(position_id, candidate_id):
            raise InvalidSelection(
                f"Candidate {candidate_id} is not an approved candidate for position {position_id}",
                details={"position_id": position_id, "candidate_id": candidate_id},
            )

    def check_capacity(self, position_id: str, current: list[str]) -> None:
        """Raise InvalidSelection if one more selection would exceed the limit."""
        position = self.catalog.get_position(position_id)
        if len(current) >= position.max_selections:
            raise InvalidSelection(
                f"Position {position_id} allows at most {position.max_selections} selection(s)",
                details={
                    "position_id": position_id,
                    "max_selections": position.max_selections,
                },
            )

    def check_abstain_allowed(self, position_id: str) -> None:
        self.catalog.get_position(position_id)
        if not self.catalog.allow_abstain:
            raise InvalidSelection(
                "Abstaining is not allowed in this election",
                details={"position_id": position_id},
            )

    def missing_positions(self, choices: dict[str, PositionChoice]) -> list[str]:
        """Required positions with neither a selection nor an abstention."""
        missing = []
        for position in self.catalog.positions:
            choice = choices.get(position.id)
            if position.required and not (choice and choice.is_complete):
                missing.append(position.id)
        return missing

    def selection_problems(self, choices: dict[str, PositionChoice]) -> list[dict[str, Any]]:
        """Every choice that is illegal under the current catalog."""
        problems: list[dict[str, Any]] = []
        for position_id, choice in choices.items():
            if not self.catalog.has_position(position_id):
                problems.append(
                    {
                        "code": "UNKNOWN_POSITION",
                        "position_id": position_id,
                        "message": f"Position {position_id} is not part of this election",
                    }
                )
                continue

            position = self.catalog.get_position(position_id)
            if choice.abstain and choice.candidate_ids:
                problems.append(
                    {
                        "code": "ABSTAIN_WITH_SELECTIONS",
                        "position_id": position_id,
                        "message": "A position cannot have selections and an abstention",
                    }
                )
            if choice.abstain and not self.catalog.allow_abstain:
                problems.append(
                    {
                        "code": "ABSTAIN_NOT_ALLOWED",
                        "position_id": position_id,
                        "message": "Abstaining is not allowed in this election",
                    }
                )
            if len(choice.candidate_ids) > position.max_selections:
                problems.append(
                    {
                        "code": "TOO_MANY_SELECTIONS",
                        "position_id": position_id,
                        "message": f"At most {position.max_selections} selection(s) allowed",
                    }
                )
            if len(set(choice.candidate_ids)) != len(choice.candidate_ids):
                problems.append(
                    {
                        "code": "DUPLICATE_SELECTION",
                        "position_id": position_id,
                        "message": "A candidate was selected more than once",
                    }
                )
            for candidate_id in choice.candidate_ids:
                if not self.catalog.is_selectable(position_id, candidate_id):
                    problems.append(
                        {
                            "code": "INELIGIBLE_CANDIDATE",
                            "position_id": position_id,
                            "candidate_id": candidate_id,
                            "message": f"Candidate {candidate_id} is no longer eligible; please re-select",
                        }
                    )
        return problems

    def validate(self, draft: "BallotDraft") -> list[dict[str, Any]]:
        """All problems with a draft, selection problems first."""
        problems = self.selection_problems(draft.choices)
        for position_id in self.missing_positions(draft.choices):
            problems.append(
                {
                    "code": "POSITION_INCOMPLETE",
                    "position_id": position_id,
                    "message": "Select a candidate or abstain for this position",
                }
            )
        return problems

    def assert_valid(self, draft: "BallotDraft") -> None:
        """Raise the most specific error for an unsubmittable draft.

        Raises:
            InvalidSelection: if any choice is illegal.
            IncompleteBallot: if a required position has no choice.
        """
        problems = self.selection_problems(draft.choices)
        if problems:
            raise InvalidSelection(
                "One or more selections are no longer valid",
                details={"problems": problems},
            )
        missing = self.missing_positions(draft.choices)
        if missing:
            raise IncompleteBallot(details={"missing_positions": missing})


class MutationAction(str, Enum):
    SET_SELECTION = "set_selection"
    REMOVE_SELECTION = "remove_selection"
    SET_ABSTAIN = "set_abstain"


@dataclass(frozen=True)
class DraftMutation:
    """One voter edit to a single position."""

    action: MutationAction
    position_id: str
    candidate_id: str | None = None
    abstain: bool = True

    def apply(self, draft: "BallotDraft") -> None:
        if self.action == MutationAction.SET_ABSTAIN:
            draft.set_abstain(self.position_id, self.abstain)
            return

        if not self.candidate_id:
            raise InvalidSelection(
                f"{self.action.value} requires a candidate_id",
                details={"position_id": self.position_id},
            )
        if self.action == MutationAction.SET_SELECTION:
            draft.set_selection(self.position_id, self.candidate_id)
        else:
            draft.remove_selection(self.position_id, self.candidate_id)


class BallotDraft:
    """Mutable, in-progress ballot for a single voting session."""

    def __init__(
        self,
        catalog: PositionCatalog,
        session_id: str,
        choices: dict[str, PositionChoice] | None = None,
    ) -> None:
        self.catalog = catalog
        self.session_id = session_id
        self.validator = SelectionValidator(catalog)
        self._choices: dict[str, PositionChoice] = dict(choices or {})

    @property
    def election_id(self) -> str:
        return self.catalog.election_id

    @property
    def choices(self) -> dict[str, PositionChoice]:
        return self._choices

    def selections(self, position_id: str) -> list[str]:
        choice = self._choices.get(position_id)
        return list(choice.candidate_ids) if choice else []

    def is_abstain(self, position_id: str) -> bool:
        choice = self._choices.get(position_id)
        return bool(choice and choice.abstain)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def set_selection(self, position_id: str, candidate_id: str) -> None:
        """Select a candidate.

        Single-seat positions replace the previous selection; multi-seat
        positions reject a selection beyond ``max_selections`` and keep the
        existing ones.
        """
        self.validator.check_candidate(position_id, candidate_id)
        position = self.catalog.get_position(position_id)
        current = self.selections(position_id)

        if candidate_id in current:
            return

        if position.max_selections == 1:
            updated = [candidate_id]
        else:
            self.validator.check_capacity(position_id, current)
            updated = current + [candidate_id]

        self._choices[position_id] = PositionChoice(candidate_ids=updated, abstain=False)

    def remove_selection(self, position_id: str, candidate_id: str) -> None:
        """Deselect a candidate; a no-op if it was not selected."""
        self.catalog.get_position(position_id)
        choice = self._choices.get(position_id)
        if choice and candidate_id in choice.candidate_ids:
            choice.candidate_ids = [c for c in choice.candidate_ids if c != candidate_id]

    def set_abstain(self, position_id: str, abstain: bool) -> None:
        """Mark or unmark an explicit abstention.

        Abstaining clears the position's selections. Withdrawing an
        abstention leaves the position empty.
        """
        if abstain:
            self.validator.check_abstain_allowed(position_id)
            self._choices[position_id] = PositionChoice(candidate_ids=[], abstain=True)
            return

        self.catalog.get_position(position_id)
        choice = self._choices.get(position_id)
        if choice and choice.abstain:
            self._choices[position_id] = PositionChoice(candidate_ids=[], abstain=False)

    # ------------------------------------------------------------------
    # Completeness
    # ------------------------------------------------------------------

    def is_position_complete(self, position_id: str) -> bool:
        self.catalog.get_position(position_id)
        choice = self._choices.get(position_id)
        return bool(choice and choice.is_complete)

    def is_ballot_complete(self) -> bool:
        return not self.validator.missing_positions(self._choices)

    def completion_status(self) -> dict[str, Any]:
        positions = {
            p.id: self.is_position_complete(p.id) for p in self.catalog.positions
        }
        missing = self.validator.missing_positions(self._choices)
        return {
            "positions": positions,
            "missing_positions": missing,
            "ballot_complete": not missing,
        }

    def to_position_votes(self) -> list[PositionVote]:
        """Project to one PositionVote per position, in ballot order.

        Optional positions the voter never touched are recorded with no
        candidates and ``abstain=False``.

        Raises:
            IncompleteBallot: if a required position has no choice.
        """
        missing = self.validator.missing_positions(self._choices)
        if missing:
            raise IncompleteBallot(details={"missing_positions": missing})

        votes = []
        for position in self.catalog.positions:
            choice = self._choices.get(position.id) or PositionChoice()
            ordered = sorted(
                choice.candidate_ids,
                key=lambda cid: (self.catalog.candidate_rank(position.id, cid), cid),
            )
            votes.append(
                PositionVote(
                    position_id=position.id,
                    candidate_ids=tuple(ordered),
                    abstain=choice.abstain,
                )
            )
        return votes

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def copy(self, catalog: PositionCatalog | None = None) -> "BallotDraft":
        """Independent copy, optionally bound to a fresher catalog."""
        return BallotDraft(
            catalog or self.catalog,
            self.session_id,
            {
                pid: PositionChoice(list(c.candidate_ids), c.abstain)
                for pid, c in self._choices.items()
            },
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "election_id": self.election_id,
            "choices": {pid: c.to_dict() for pid, c in self._choices.items()},
        }

    def snapshot(self) -> dict[str, Any]:
        """Draft plus completion state, as returned to the voter."""
        return {**self.to_dict(), "completion": self.completion_status()}

    @classmethod
    def from_dict(
        cls, catalog: PositionCatalog, session_id: str, data: dict[str, Any] | None
    ) -> "BallotDraft":
        """Rehydrate a stored draft without re-validating it."""
        data = data or {}
        choices = {
            str(pid): PositionChoice(
                candidate_ids=[str(c) for c in raw.get("candidate_ids") or []],
                abstain=bool(raw.get("abstain", False)),
            )
            for pid, raw in (data.get("choices") or {}).items()
        }
        return cls(catalog, session_id, choices)
