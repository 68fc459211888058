from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Optional, Type

from queen.phase_gate import comments, labels
from queen.phase_gate.capabilities import GovernanceActions, IssueRef
from queen.phase_gate.config_loader import AutoVotingExit
from queen.phase_gate.evaluator import (
    OUTCOME_INCONCLUSIVE,
    OUTCOME_NEEDS_HUMAN,
    OUTCOME_NEEDS_MORE_DISCUSSION,
    OUTCOME_READY,
    OUTCOME_REJECTED,
    OUTCOME_SKIPPED,
    check_voting_requirements,
    determine_outcome,
    early_decision_reason,
    is_unanimous,
)
from queen.phase_gate.logger import log_event
from queen.phase_gate.votes import ValidatedVoteResult


@dataclass(frozen=True)
class OutcomeTransition:
    label: str
    message: str
    close: bool = False
    lock: bool = False
    unlock: bool = False


class GovernanceService:
    """Phase-changing actions on a single issue.

    Each action re-reads the issue's labels first and does nothing when the
    expected source phase label is already gone, so a concurrent actor that
    moved the issue is never fought.
    """

    def __init__(self, issues):
        self.issues = issues
        self.human_help_requested: List[IssueRef] = []

    def _in_phase(self, ref: IssueRef, label: str) -> bool:
        current = self.issues.get_issue_labels(ref)
        if labels.has_label(current, label):
            return True
        log_event(
            "governance",
            f"issue={ref} no longer carries {label} (labels={sorted(current)}), skipping",
        )
        return False

    def transition_to_voting(self, ref: IssueRef) -> str:
        if not self._in_phase(ref, labels.DISCUSSION):
            return OUTCOME_SKIPPED
        cycle = self.issues.count_voting_comments(ref) + 1
        body = comments.build_voting_comment(comments.voting_start_message(), ref.issue_number, cycle)
        self.issues.transition(
            ref,
            remove_label=labels.DISCUSSION,
            add_label=labels.VOTING,
            comment=body,
        )
        return "voting"

    def end_voting(
        self,
        ref: IssueRef,
        early_decision: bool = False,
        voting_config: Optional[AutoVotingExit] = None,
        validated_votes: Optional[ValidatedVoteResult] = None,
    ) -> str:
        return self._close_vote(
            ref,
            source_label=labels.VOTING,
            final=False,
            early_decision=early_decision,
            voting_config=voting_config,
            validated_votes=validated_votes,
        )

    def resolve_inconclusive(
        self,
        ref: IssueRef,
        voting_config: Optional[AutoVotingExit] = None,
        validated_votes: Optional[ValidatedVoteResult] = None,
    ) -> str:
        return self._close_vote(
            ref,
            source_label=labels.EXTENDED_VOTING,
            final=True,
            early_decision=False,
            voting_config=voting_config,
            validated_votes=validated_votes,
        )

    def _close_vote(self, ref, source_label, final, early_decision, voting_config, validated_votes):
        if not self._in_phase(ref, source_label):
            return OUTCOME_SKIPPED

        comment_id = self.issues.find_voting_comment_id(ref)
        if comment_id is None:
            self._handle_missing_voting_comment(ref)
            return OUTCOME_SKIPPED

        validated = validated_votes
        if validated is None:
            validated = self.issues.get_validated_vote_counts(ref, comment_id)

        shortfall = check_voting_requirements(voting_config, validated)
        if shortfall is not None:
            log_event(
                "governance",
                (
                    f"issue={ref} requirements not met reason={shortfall.reason} "
                    f"valid_voters={shortfall.valid_voters}/{shortfall.min_voters} "
                    f"required={shortfall.required_participated}/{shortfall.required_needed}, forcing inconclusive"
                ),
                level="warning",
            )
            outcome = OUTCOME_INCONCLUSIVE
        elif (
            voting_config is not None
            and voting_config.requires == "unanimous"
            and not is_unanimous(validated.votes)
        ):
            outcome = OUTCOME_INCONCLUSIVE
        else:
            outcome = determine_outcome(validated.votes)

        prefix = ""
        if early_decision and shortfall is None and outcome != OUTCOME_INCONCLUSIVE:
            prefix = f"**Early decision** ({early_decision_reason(voting_config)}).\n\n"

        if shortfall is not None:
            inconclusive_message = comments.voting_end_requirements_not_met(validated.votes, shortfall, final)
        elif final:
            inconclusive_message = comments.voting_end_inconclusive_final(validated.votes)
        else:
            inconclusive_message = comments.voting_end_inconclusive(validated.votes)

        transition = self._outcome_transition(outcome, validated, final, inconclusive_message)
        self.issues.transition(
            ref,
            remove_label=source_label,
            add_label=transition.label,
            comment=comments.build_status_comment(prefix + transition.message, ref.issue_number),
            close=transition.close,
            lock=transition.lock,
            unlock=transition.unlock,
        )
        log_event(
            "governance",
            f"issue={ref} vote closed outcome={outcome} final={final} votes={validated.votes.as_dict()}",
        )
        return outcome

    def _outcome_transition(self, outcome, validated, final, inconclusive_message) -> OutcomeTransition:
        votes = validated.votes
        if outcome == OUTCOME_READY:
            message = (
                comments.voting_end_inconclusive_resolved(votes, outcome) if final else comments.voting_end_ready(votes)
            )
            return OutcomeTransition(labels.READY_TO_IMPLEMENT, message)
        if outcome == OUTCOME_REJECTED:
            message = (
                comments.voting_end_inconclusive_resolved(votes, outcome) if final else comments.voting_end_rejected(votes)
            )
            return OutcomeTransition(labels.REJECTED, message, close=True, lock=True)
        if outcome == OUTCOME_NEEDS_MORE_DISCUSSION:
            return OutcomeTransition(
                labels.DISCUSSION, comments.voting_end_needs_more_discussion(votes), unlock=True
            )
        if outcome == OUTCOME_NEEDS_HUMAN:
            message = (
                comments.voting_end_inconclusive_resolved(votes, outcome)
                if final
                else comments.voting_end_needs_human_input(votes)
            )
            return OutcomeTransition(labels.NEEDS_HUMAN, message)
        if final:
            return OutcomeTransition(labels.INCONCLUSIVE, inconclusive_message, close=True, lock=True)
        return OutcomeTransition(labels.EXTENDED_VOTING, inconclusive_message)

    def _handle_missing_voting_comment(self, ref: IssueRef) -> None:
        try:
            result = self.issues.post_voting_comment(ref)
            if result == "posted":
                log_event("governance", f"issue={ref} self-healed missing voting comment")
            else:
                log_event("governance", f"issue={ref} voting comment already present (concurrent post)")
            return
        except Exception as exc:
            log_event(
                "governance",
                f"issue={ref} self-heal failed: {exc}. Falling back to human help.",
                level="warning",
            )

        self.human_help_requested.append(ref)
        error_code = comments.ERROR_VOTING_COMMENT_NOT_FOUND
        if self.issues.has_human_help_comment(ref, error_code):
            log_event("governance", f"issue={ref} human help comment already posted, skipping")
            return

        self.issues.comment(
            ref,
            comments.build_human_help_comment(
                comments.voting_comment_not_found_message(), ref.issue_number, error_code
            ),
        )
        try:
            self.issues.add_labels(ref, [labels.NEEDS_HUMAN])
        except Exception as exc:
            log_event(
                "governance",
                f"issue={ref} failed to add {labels.NEEDS_HUMAN} label: {exc}",
                level="warning",
            )
        log_event("governance", f"issue={ref} posted human help request code={error_code}", level="warning")


if TYPE_CHECKING:
    _governance_check: Type[GovernanceActions] = GovernanceService
