"""Capability interfaces consumed by the phase reconciler."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Literal, Mapping, Optional, Protocol, Set

from queen.phase_gate.config_loader import AutoVotingExit
from queen.phase_gate.votes import ValidatedVoteResult

PostResult = Literal["posted", "already-exists"]
Outcome = Literal[
    "ready-to-implement",
    "rejected",
    "inconclusive",
    "needs-more-discussion",
    "needs-human-input",
    "skipped",
]


@dataclass(frozen=True)
class IssueRef:
    owner: str
    repo: str
    issue_number: int

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    def __str__(self) -> str:
        return f"{self.owner}/{self.repo}#{self.issue_number}"


class IssueOperationsCapability(Protocol):
    def get_label_added_time(self, ref: IssueRef, label: str) -> Optional[datetime]: ...

    def get_validated_vote_counts(self, ref: IssueRef, comment_id: int) -> ValidatedVoteResult: ...

    def find_voting_comment_id(self, ref: IssueRef) -> Optional[int]: ...

    def get_discussion_readiness(self, ref: IssueRef) -> Set[str]: ...

    def post_voting_comment(self, ref: IssueRef) -> PostResult: ...


class GovernanceActions(Protocol):
    def transition_to_voting(self, ref: IssueRef) -> str: ...

    def end_voting(
        self,
        ref: IssueRef,
        early_decision: bool = False,
        voting_config: Optional[AutoVotingExit] = None,
        validated_votes: Optional[ValidatedVoteResult] = None,
    ) -> Outcome: ...

    def resolve_inconclusive(
        self,
        ref: IssueRef,
        voting_config: Optional[AutoVotingExit] = None,
        validated_votes: Optional[ValidatedVoteResult] = None,
    ) -> Outcome: ...


class PROperationsCapability(Protocol):
    def find_linked_open_prs(self, owner: str, repo: str, issue_number: int) -> List[Mapping]: ...

    def has_notification_comment(
        self, owner: str, repo: str, pr_number: int, notification_type: str, issue_number: int
    ) -> bool: ...

    def comment(self, owner: str, repo: str, pr_number: int, body: str) -> None: ...
