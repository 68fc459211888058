from __future__ import annotations

from dataclasses import dataclass
from typing import AbstractSet, Iterable, Optional, Tuple

from queen.phase_gate.config_loader import (
    AutoDiscussionExit,
    AutoVotingExit,
    RequiredParticipants,
)
from queen.phase_gate.votes import ValidatedVoteResult, VoteCounts

OUTCOME_READY = "ready-to-implement"
OUTCOME_REJECTED = "rejected"
OUTCOME_INCONCLUSIVE = "inconclusive"
OUTCOME_NEEDS_MORE_DISCUSSION = "needs-more-discussion"
OUTCOME_NEEDS_HUMAN = "needs-human-input"
OUTCOME_SKIPPED = "skipped"


def is_majority(votes: VoteCounts) -> bool:
    return votes.thumbs_up > votes.thumbs_down


def is_unanimous(votes: VoteCounts) -> bool:
    return votes.thumbs_down == 0 and votes.thumbs_up > 0


def required_participation(
    required: RequiredParticipants, present: Iterable[str]
) -> Tuple[int, Tuple[str, ...]]:
    """Return (how many required users are present, which are missing)."""
    present_set = set(present)
    participated = [user for user in required.users if user in present_set]
    missing = tuple(user for user in required.users if user not in present_set)
    return len(participated), missing


def _participation_met(required: RequiredParticipants, present: Iterable[str]) -> bool:
    if not required.users or required.min_count <= 0:
        return True
    count, _ = required_participation(required, present)
    return count >= required.min_count


def is_exit_eligible(exit_: AutoVotingExit, validated: ValidatedVoteResult) -> bool:
    if len(validated.voters) < exit_.min_voters:
        return False
    if not _participation_met(exit_.required_voters, validated.participants):
        return False
    if exit_.requires == "unanimous":
        return is_unanimous(validated.votes)
    return is_majority(validated.votes)


def is_discussion_exit_eligible(exit_: AutoDiscussionExit, ready_users: AbstractSet[str]) -> bool:
    if len(ready_users) < exit_.min_ready:
        return False
    return _participation_met(exit_.required_ready, ready_users)


def determine_outcome(votes: VoteCounts) -> str:
    if votes.eyes > votes.thumbs_up + votes.thumbs_down + votes.confused:
        return OUTCOME_NEEDS_HUMAN
    if votes.confused > votes.thumbs_up + votes.thumbs_down:
        return OUTCOME_NEEDS_MORE_DISCUSSION
    if votes.thumbs_up > votes.thumbs_down:
        return OUTCOME_READY
    if votes.thumbs_down > votes.thumbs_up:
        return OUTCOME_REJECTED
    return OUTCOME_INCONCLUSIVE


@dataclass(frozen=True)
class RequirementShortfall:
    reason: str
    min_voters: int
    valid_voters: int
    missing_required: Tuple[str, ...] = ()
    required_needed: int = 0
    required_participated: int = 0


def check_voting_requirements(
    exit_: Optional[AutoVotingExit], validated: ValidatedVoteResult
) -> Optional[RequirementShortfall]:
    """Quorum and mandatory-participant check applied when voting ends."""
    if exit_ is None:
        return None
    if len(validated.voters) < exit_.min_voters:
        return RequirementShortfall(
            reason="quorum",
            min_voters=exit_.min_voters,
            valid_voters=len(validated.voters),
        )
    required = exit_.required_voters
    if required.users and required.min_count > 0:
        count, missing = required_participation(required, validated.participants)
        if count < required.min_count:
            return RequirementShortfall(
                reason="required",
                min_voters=exit_.min_voters,
                valid_voters=len(validated.voters),
                missing_required=missing,
                required_needed=required.min_count,
                required_participated=count,
            )
    return None


def early_decision_reason(exit_: Optional[AutoVotingExit]) -> str:
    if exit_ is None or not exit_.required_voters.users:
        return "quorum reached"
    min_count = exit_.required_voters.min_count
    total = len(exit_.required_voters.users)
    if min_count <= 0:
        return "quorum reached"
    if min_count >= total:
        return "all required voters have participated"
    if min_count == 1:
        return "a required voter has participated"
    return f"{min_count} of {total} required voters have participated"
