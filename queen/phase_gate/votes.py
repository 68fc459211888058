from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Set, Tuple

from queen.phase_gate.logger import log_event

VOTING_REACTIONS = ("+1", "-1", "confused", "eyes")


@dataclass(frozen=True)
class VoteCounts:
    thumbs_up: int = 0
    thumbs_down: int = 0
    confused: int = 0
    eyes: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {
            "thumbsUp": self.thumbs_up,
            "thumbsDown": self.thumbs_down,
            "confused": self.confused,
            "eyes": self.eyes,
        }


@dataclass(frozen=True)
class ValidatedVoteResult:
    votes: VoteCounts = field(default_factory=VoteCounts)
    voters: Tuple[str, ...] = ()
    participants: Tuple[str, ...] = ()


def _reaction_user(reaction: Mapping) -> str:
    user = reaction.get("user")
    if not isinstance(user, dict):
        return ""
    return (user.get("login") or "").strip().lower()


def validate_votes(reactions: Iterable[Mapping], context: str = "") -> ValidatedVoteResult:
    """Tally voting reactions, discarding ambiguous ballots.

    A user who reacted with more than one voting kind stays a participant
    but is left out of both the tally and the voter list.
    """
    by_user: Dict[str, Set[str]] = {}
    anonymous = 0
    for reaction in reactions:
        content = reaction.get("content")
        if content not in VOTING_REACTIONS:
            continue
        user = _reaction_user(reaction)
        if not user:
            anonymous += 1
            continue
        by_user.setdefault(user, set()).add(content)

    counts = {kind: 0 for kind in VOTING_REACTIONS}
    voters: List[str] = []
    participants: List[str] = []
    for user, kinds in by_user.items():
        participants.append(user)
        if len(kinds) == 1:
            counts[next(iter(kinds))] += 1
            voters.append(user)

    if anonymous:
        log_event(
            "votes",
            f"{context} skipped {anonymous} voting reaction(s) without users (likely deleted accounts)",
        )
    discarded = len(participants) - len(voters)
    if discarded:
        log_event("votes", f"{context} discarded {discarded} ambiguous ballot(s)", level="debug")

    return ValidatedVoteResult(
        votes=VoteCounts(
            thumbs_up=counts["+1"],
            thumbs_down=counts["-1"],
            confused=counts["confused"],
            eyes=counts["eyes"],
        ),
        voters=tuple(voters),
        participants=tuple(participants),
    )


def readiness_from_reactions(reactions: Iterable[Mapping], context: str = "") -> Set[str]:
    ready: Set[str] = set()
    anonymous = 0
    for reaction in reactions:
        if reaction.get("content") != "+1":
            continue
        user = _reaction_user(reaction)
        if not user:
            anonymous += 1
            continue
        ready.add(user)
    if anonymous:
        log_event(
            "votes",
            f"{context} skipped {anonymous} readiness reaction(s) without users (likely deleted accounts)",
        )
    return ready
