"""Per-repository phase reconciliation.

For every open issue in a phase with auto exits: find when the phase label
was added, run the early-decision check while the deadline has not passed,
and force the deadline transition once it has.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from queen.phase_gate import labels
from queen.phase_gate.capabilities import IssueRef
from queen.phase_gate.config_loader import EffectiveConfig, auto_exits, has_auto_exits
from queen.phase_gate.evaluator import (
    OUTCOME_READY,
    OUTCOME_SKIPPED,
    is_discussion_exit_eligible,
    is_exit_eligible,
)
from queen.phase_gate.locker import ProcessedIssues
from queen.phase_gate.logger import log_event
from queen.phase_gate.notifier import notify_pending_prs
from queen.phase_gate.report import new_repository_result
from queen.phase_gate.retry import (
    RetryPolicy,
    classify_access_issue,
    is_not_found_error,
    with_retry,
)

EarlyCheck = Callable[[IssueRef, float], bool]


@dataclass(frozen=True)
class PhaseSpec:
    name: str
    label: str
    exits: Sequence
    transition: Callable[[IssueRef], None]
    early_check: Optional[EarlyCheck] = None

    @property
    def deadline_ms(self) -> int:
        return self.exits[-1].after_ms


def _utcnow():
    return datetime.now(timezone.utc)


class PhaseReconciler:
    def __init__(
        self,
        client,
        issues,
        governance,
        pr_ops,
        owner: str,
        repo: str,
        retry_policy: Optional[RetryPolicy] = None,
        now: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.issues = issues
        self.governance = governance
        self.pr_ops = pr_ops
        self.owner = owner
        self.repo = repo
        self.retry_policy = retry_policy or RetryPolicy()
        self.now = now
        self.sleep = sleep
        self.result = new_repository_result(f"{owner}/{repo}")

    def _retry(self, fn, label):
        return with_retry(fn, policy=self.retry_policy, label=label, sleep=self.sleep)

    def _ref(self, issue_number) -> IssueRef:
        return IssueRef(self.owner, self.repo, issue_number)

    # issue listing

    def iter_phase_issues(self, canonical_label: str, phase: str):
        """Open issues under the canonical label or any legacy alias, each once."""
        processed = ProcessedIssues()
        for name in labels.label_query_names(canonical_label):
            issues = self._retry(
                lambda name=name: list(self.client.list_issues(self.owner, self.repo, name)),
                f"list {name}",
            )
            for issue in issues:
                if not isinstance(issue, dict) or "pull_request" in issue:
                    continue
                number = issue.get("number")
                if number is None or processed.seen(phase, number):
                    continue
                processed.mark(phase, number)
                yield self._ref(number)

    # outcome bookkeeping

    def _record_access_issue(self, ref, exc, reason):
        log_event(
            "phases",
            f"issue={ref} {'rate limited' if reason == 'rate_limit' else 'forbidden or missing permissions'}, skipping for now",
            level="warning",
        )
        self.result["access_issues"].append(
            {
                "repo": ref.full_name,
                "issue_number": ref.issue_number,
                "status": getattr(exc, "status", None),
                "reason": reason,
            }
        )

    def _record_outcome(self, ref, phase, outcome):
        log_event("phases", f"issue={ref} phase={phase} outcome={outcome}")
        if outcome == OUTCOME_SKIPPED:
            return
        self.result["transitions"].append(
            {"issue_number": ref.issue_number, "phase": phase, "outcome": outcome}
        )
        if outcome == OUTCOME_READY:
            notify_pending_prs(self.pr_ops, self.owner, self.repo, ref.issue_number)

    # early-decision factories

    def voting_early_check(self, exits, final: bool) -> Optional[EarlyCheck]:
        autos = auto_exits(exits)
        if len(autos) < 2:
            return None
        phase = "extended_voting" if final else "voting"

        def check(ref: IssueRef, elapsed_ms: float) -> bool:
            due = [exit_ for exit_ in autos if exit_.after_ms <= elapsed_ms]
            if not due:
                return False
            try:
                comment_id = self.issues.find_voting_comment_id(ref)
                if comment_id is None:
                    return False
                validated = self.issues.get_validated_vote_counts(ref, comment_id)
            except Exception as exc:
                self._defer_or_raise(ref, exc)
                return False

            for exit_ in due:
                if not is_exit_eligible(exit_, validated):
                    continue
                log_event(
                    "phases",
                    f"issue={ref} early exit after={exit_.after_ms // 60000}m requires={exit_.requires} matched",
                )
                if final:
                    outcome = self.governance.resolve_inconclusive(
                        ref, voting_config=exit_, validated_votes=validated
                    )
                else:
                    outcome = self.governance.end_voting(
                        ref, early_decision=True, voting_config=exit_, validated_votes=validated
                    )
                self._record_outcome(ref, phase, outcome)
                return True
            return False

        return check

    def discussion_early_check(self, exits) -> Optional[EarlyCheck]:
        autos = auto_exits(exits)
        if len(autos) < 2:
            return None

        def check(ref: IssueRef, elapsed_ms: float) -> bool:
            due = [exit_ for exit_ in autos if exit_.after_ms <= elapsed_ms]
            if not due:
                return False
            try:
                ready = self.issues.get_discussion_readiness(ref)
            except Exception as exc:
                self._defer_or_raise(ref, exc)
                return False
            for exit_ in due:
                if is_discussion_exit_eligible(exit_, ready):
                    log_event(
                        "phases",
                        f"issue={ref} early discussion exit after={exit_.after_ms // 60000}m ready={len(ready)}",
                    )
                    outcome = self.governance.transition_to_voting(ref)
                    self._record_outcome(ref, "discussion", outcome)
                    return True
            return False

        return check

    def _defer_or_raise(self, ref, exc):
        # Access and not-found errors keep their per-issue handling; anything
        # else defers the issue to the deadline path of a later run.
        if is_not_found_error(exc) or classify_access_issue(exc):
            raise exc
        log_event(
            "phases",
            f"issue={ref} early decision check failed, deferring to the normal timer: {exc}",
            level="warning",
        )

    # phases

    def phase_specs(self, config: EffectiveConfig):
        specs = []
        discussion = auto_exits(config.discussion)
        if discussion:
            specs.append(
                PhaseSpec(
                    name="discussion",
                    label=labels.DISCUSSION,
                    exits=discussion,
                    transition=self._discussion_deadline,
                    early_check=self.discussion_early_check(discussion),
                )
            )
        voting = auto_exits(config.voting)
        if voting:
            specs.append(
                PhaseSpec(
                    name="voting",
                    label=labels.VOTING,
                    exits=voting,
                    transition=lambda ref, exit_=voting[-1]: self._voting_deadline(ref, exit_, final=False),
                    early_check=self.voting_early_check(voting, final=False),
                )
            )
        extended = auto_exits(config.extended_voting)
        if extended:
            specs.append(
                PhaseSpec(
                    name="extended_voting",
                    label=labels.EXTENDED_VOTING,
                    exits=extended,
                    transition=lambda ref, exit_=extended[-1]: self._voting_deadline(ref, exit_, final=True),
                    early_check=self.voting_early_check(extended, final=True),
                )
            )
        return specs

    def _discussion_deadline(self, ref):
        outcome = self.governance.transition_to_voting(ref)
        self._record_outcome(ref, "discussion", outcome)

    def _voting_deadline(self, ref, deadline_exit, final):
        if final:
            outcome = self.governance.resolve_inconclusive(ref, voting_config=deadline_exit)
            self._record_outcome(ref, "extended_voting", outcome)
        else:
            outcome = self.governance.end_voting(ref, voting_config=deadline_exit)
            self._record_outcome(ref, "voting", outcome)

    def process_issue(self, ref: IssueRef, spec: PhaseSpec) -> None:
        try:
            labeled_at = self.issues.get_label_added_time(ref, spec.label)
            if labeled_at is None:
                log_event(
                    "phases",
                    f"issue={ref} could not determine when '{spec.label}' was added, skipping",
                    level="warning",
                )
                return

            elapsed_ms = (self.now() - labeled_at).total_seconds() * 1000
            if spec.early_check is not None and elapsed_ms < spec.deadline_ms:
                if spec.early_check(ref, elapsed_ms):
                    return

            if elapsed_ms >= spec.deadline_ms:
                log_event("phases", f"issue={ref} deadline reached, leaving {spec.name}")
                spec.transition(ref)
            else:
                remaining = int(spec.deadline_ms - elapsed_ms)
                log_event(
                    "phases",
                    f"issue={ref} {remaining // 60000}m {(remaining % 60000) // 1000}s remaining in {spec.name}",
                    level="debug",
                )
        except Exception as exc:
            if is_not_found_error(exc):
                log_event("phases", f"issue={ref} not found (may have been deleted), skipping", level="warning")
                return
            reason = classify_access_issue(exc)
            if reason:
                self._record_access_issue(ref, exc, reason)
                return
            raise

    def reconcile_phase(self, spec: PhaseSpec) -> None:
        for ref in self.iter_phase_issues(spec.label, spec.name):
            try:
                self.process_issue(ref, spec)
            except Exception as exc:
                log_event("phases", f"issue={ref} phase={spec.name} failed: {exc}", level="error")
                self.result["failed_issues"].append(
                    {"repo": ref.full_name, "issue_number": ref.issue_number, "error": str(exc)}
                )

    def repair_voting_comments(self) -> None:
        """Recreate missing voting comments; never changes labels or votes."""
        for canonical, phase in ((labels.VOTING, "voting"), (labels.EXTENDED_VOTING, "extended_voting")):
            for ref in self.iter_phase_issues(canonical, f"repair:{phase}"):
                try:
                    result = self.issues.post_voting_comment(ref)
                except Exception as exc:
                    if is_not_found_error(exc):
                        continue
                    reason = classify_access_issue(exc)
                    if reason:
                        self._record_access_issue(ref, exc, reason)
                        continue
                    log_event("phases", f"issue={ref} voting comment repair failed: {exc}", level="error")
                    self.result["failed_issues"].append(
                        {"repo": ref.full_name, "issue_number": ref.issue_number, "error": str(exc)}
                    )
                    continue
                if result == "posted":
                    log_event("phases", f"issue={ref} repaired missing voting comment")
                    self.result["repaired_comments"].append(ref.issue_number)

    def run(self, config: EffectiveConfig):
        if has_auto_exits(config):
            for spec in self.phase_specs(config):
                self.reconcile_phase(spec)
        else:
            log_event("phases", f"repo={self.owner}/{self.repo} manual exits only, skipping reconciliation")
            self.result["skipped_reconcile"] = True
        self.repair_voting_comments()
        self.result["human_help_issues"] = [
            {"repo": ref.full_name, "issue_number": ref.issue_number}
            for ref in self.governance.human_help_requested
        ]
        return self.result
