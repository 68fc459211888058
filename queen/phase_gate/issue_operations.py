from __future__ import annotations

import time
from datetime import datetime
from typing import TYPE_CHECKING, List, Optional, Set, Type

from queen.phase_gate import comments, labels
from queen.phase_gate.capabilities import IssueOperationsCapability, IssueRef
from queen.phase_gate.logger import log_event
from queen.phase_gate.retry import RetryPolicy, with_retry
from queen.phase_gate.votes import ValidatedVoteResult, readiness_from_reactions, validate_votes

_TRANSITION_COMMENT_TYPES = ("voting", "status")


def _parse_iso8601(ts):
    if not ts or not isinstance(ts, str):
        return None
    try:
        return datetime.fromisoformat(ts.replace("Z", "+00:00"))
    except ValueError:
        return None


def _status(exc):
    return getattr(exc, "status", None)


class IssueOperations:
    """Issue reads and mutations over the REST client.

    Every REST call is retried on its own, so a transient failure late in a
    transition never replays the steps that already succeeded. Only
    comments authored by bot_login count as bot comments; the hidden
    metadata marker alone is never trusted.
    """

    def __init__(self, client, bot_login, retry_policy: Optional[RetryPolicy] = None, sleep=time.sleep):
        bot_login = (bot_login or "").strip().lower()
        if not bot_login:
            raise ValueError("bot_login is required to recognise bot comments")
        self.client = client
        self.bot_login = bot_login
        self.retry_policy = retry_policy or RetryPolicy()
        self.sleep = sleep

    def _call(self, fn, label):
        return with_retry(fn, policy=self.retry_policy, label=label, sleep=self.sleep)

    def _is_bot_comment(self, comment):
        author = ((comment.get("user") or {}).get("login") or "").lower()
        return author == self.bot_login

    def _bot_comments(self, ref: IssueRef):
        found = self._call(
            lambda: list(self.client.list_issue_comments(ref.owner, ref.repo, ref.issue_number)),
            f"{ref} list comments",
        )
        return [comment for comment in found if isinstance(comment, dict) and self._is_bot_comment(comment)]

    # reads

    def get_issue_labels(self, ref: IssueRef) -> List[str]:
        issue = self._call(
            lambda: self.client.get_issue(ref.owner, ref.repo, ref.issue_number), f"{ref} get issue"
        ) or {}
        return [lbl.get("name") for lbl in issue.get("labels", []) if isinstance(lbl, dict)]

    def get_label_added_time(self, ref: IssueRef, label: str) -> Optional[datetime]:
        """Most recent time the label (or a legacy alias) was added.

        None when it was never added, or was removed after its last addition.
        """
        timeline = self._call(
            lambda: list(self.client.list_timeline(ref.owner, ref.repo, ref.issue_number)),
            f"{ref} timeline",
        )
        events = []
        for event in timeline:
            if not isinstance(event, dict):
                continue
            kind = event.get("event")
            if kind not in ("labeled", "unlabeled"):
                continue
            label_info = event.get("label")
            name = label_info.get("name") if isinstance(label_info, dict) else None
            if not name or not labels.is_label_match(name, label):
                continue
            created = _parse_iso8601(event.get("created_at"))
            if created is None:
                continue
            events.append((created, kind))

        events.sort(key=lambda item: item[0])
        latest = None
        for created, kind in events:
            latest = created if kind == "labeled" else None
        return latest

    def find_voting_comment_id(self, ref: IssueRef) -> Optional[int]:
        candidates = []
        for comment in self._bot_comments(ref):
            body = comment.get("body")
            if not comments.is_voting_comment(body):
                continue
            metadata = comments.parse_metadata(body) or {}
            cycle = metadata.get("cycle")
            if not isinstance(cycle, int) or isinstance(cycle, bool):
                cycle = 0
            candidates.append((cycle, comment.get("created_at") or "", comment.get("id")))
        if not candidates:
            return None
        return max(candidates, key=lambda item: (item[0], item[1]))[2]

    def count_voting_comments(self, ref: IssueRef) -> int:
        return sum(1 for comment in self._bot_comments(ref) if comments.is_voting_comment(comment.get("body")))

    def has_human_help_comment(self, ref: IssueRef, error_code: str) -> bool:
        return any(
            comments.is_human_help_comment(comment.get("body"), error_code)
            for comment in self._bot_comments(ref)
        )

    def has_bot_comment_since(
        self, ref: IssueRef, since: datetime, comment_types=_TRANSITION_COMMENT_TYPES
    ) -> bool:
        """True when a bot comment of one of `comment_types` was created at or after `since`."""
        for comment in self._bot_comments(ref):
            metadata = comments.parse_metadata(comment.get("body"))
            if not metadata or metadata.get("type") not in comment_types:
                continue
            created = _parse_iso8601(comment.get("created_at"))
            if created is not None and created >= since:
                return True
        return False

    def get_validated_vote_counts(self, ref: IssueRef, comment_id: int) -> ValidatedVoteResult:
        reactions = self._call(
            lambda: list(self.client.list_comment_reactions(ref.owner, ref.repo, comment_id)),
            f"{ref} comment reactions",
        )
        return validate_votes(reactions, context=f"issue={ref} comment={comment_id}")

    def get_discussion_readiness(self, ref: IssueRef) -> Set[str]:
        reactions = self._call(
            lambda: list(self.client.list_issue_reactions(ref.owner, ref.repo, ref.issue_number)),
            f"{ref} issue reactions",
        )
        return readiness_from_reactions(reactions, context=f"issue={ref}")

    # mutations

    def post_voting_comment(self, ref: IssueRef) -> str:
        """Create the voting comment unless one already exists. Never touches labels."""
        if self.find_voting_comment_id(ref) is not None:
            log_event("issue_operations", f"issue={ref} voting comment already exists, skipping")
            return "already-exists"
        cycle = self.count_voting_comments(ref) + 1
        self.comment(ref, comments.build_voting_comment(comments.voting_start_message(), ref.issue_number, cycle))
        log_event("issue_operations", f"issue={ref} posted voting comment cycle={cycle}")
        return "posted"

    def add_labels(self, ref: IssueRef, names) -> None:
        names = list(names)
        self._call(
            lambda: self.client.add_labels(ref.owner, ref.repo, ref.issue_number, names), f"{ref} add labels"
        )

    def _remove_one(self, ref, name):
        try:
            self._call(
                lambda: self.client.remove_label(ref.owner, ref.repo, ref.issue_number, name),
                f"{ref} remove {name}",
            )
            return True
        except Exception as exc:
            if _status(exc) != 404:
                raise
            return False

    def remove_label(self, ref: IssueRef, label: str) -> None:
        """Remove the canonical label, falling back to its legacy aliases on 404."""
        for name in labels.label_query_names(label):
            if self._remove_one(ref, name):
                return

    def comment(self, ref: IssueRef, body: str) -> None:
        # Comment creation is not idempotent, so a failure is never replayed here.
        self.client.create_comment(ref.owner, ref.repo, ref.issue_number, body)

    def close(self, ref: IssueRef, reason: str = "not_planned") -> None:
        self._call(
            lambda: self.client.update_issue(
                ref.owner, ref.repo, ref.issue_number, state="closed", state_reason=reason
            ),
            f"{ref} close",
        )

    def lock(self, ref: IssueRef, reason: str = "resolved") -> None:
        self._call(lambda: self.client.lock_issue(ref.owner, ref.repo, ref.issue_number, reason), f"{ref} lock")

    def unlock(self, ref: IssueRef) -> None:
        try:
            self._call(lambda: self.client.unlock_issue(ref.owner, ref.repo, ref.issue_number), f"{ref} unlock")
        except Exception as exc:
            if _status(exc) != 422:
                raise

    def _already_commented(self, ref, add_label, body):
        labeled_at = self.get_label_added_time(ref, add_label)
        if labeled_at is None:
            log_event(
                "issue_operations",
                f"issue={ref} carries {add_label} with no label event, not commenting again",
                level="warning",
            )
            return True
        comment_type = (comments.parse_metadata(body) or {}).get("type")
        types = (comment_type,) if comment_type else _TRANSITION_COMMENT_TYPES
        return self.has_bot_comment_since(ref, labeled_at, types)

    def transition(
        self,
        ref: IssueRef,
        add_label: str,
        comment: str,
        remove_label: Optional[str] = None,
        close: bool = False,
        close_reason: str = "not_planned",
        lock: bool = False,
        lock_reason: str = "resolved",
        unlock: bool = False,
    ) -> None:
        # New label before old: a partial failure leaves at least one phase label.
        # When the new label is already present an earlier attempt got that far,
        # and the comment is only posted if that attempt did not post it.
        resumed = remove_label != add_label and labels.has_label(self.get_issue_labels(ref), add_label)
        if unlock and not lock:
            self.unlock(ref)
        if not resumed:
            self.add_labels(ref, [add_label])
        if resumed and self._already_commented(ref, add_label, comment):
            log_event("issue_operations", f"issue={ref} resuming transition to {add_label}, comment already posted")
        else:
            self.comment(ref, comment)
        if close:
            self.close(ref, close_reason)
        if remove_label and remove_label != add_label:
            self.remove_label(ref, remove_label)
        if lock:
            self.lock(ref, lock_reason)
        log_event(
            "issue_operations",
            f"issue={ref} transition from={remove_label} to={add_label} close={close} lock={lock} resumed={resumed}",
        )


if TYPE_CHECKING:
    _issue_operations_check: Type[IssueOperationsCapability] = IssueOperations
