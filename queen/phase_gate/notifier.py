from __future__ import annotations

from typing import TYPE_CHECKING, Dict, List, Type

from queen.phase_gate import comments, labels
from queen.phase_gate.capabilities import PROperationsCapability
from queen.phase_gate.logger import log_event


class PROperations:
    def __init__(self, client, bot_login):
        bot_login = (bot_login or "").strip().lower()
        if not bot_login:
            raise ValueError("bot_login is required to recognise notification comments")
        self.client = client
        self.bot_login = bot_login

    def find_linked_open_prs(self, owner, repo, issue_number) -> List[Dict]:
        """Open pull requests in the same repository that cross-reference the issue."""
        full_name = f"{owner}/{repo}".lower()
        found: Dict[int, Dict] = {}
        for event in self.client.list_timeline(owner, repo, issue_number):
            if not isinstance(event, dict) or event.get("event") != "cross-referenced":
                continue
            source = (event.get("source") or {}).get("issue") or {}
            if not source.get("pull_request") or source.get("state") != "open":
                continue
            source_repo = ((source.get("repository") or {}).get("full_name") or full_name).lower()
            if source_repo != full_name:
                continue
            number = source.get("number")
            if number is None:
                continue
            found[number] = {
                "number": number,
                "author": ((source.get("user") or {}).get("login") or ""),
                "labels": [lbl.get("name") for lbl in source.get("labels", []) if isinstance(lbl, dict)],
            }
        return [found[number] for number in sorted(found)]

    def has_notification_comment(self, owner, repo, pr_number, notification_type, issue_number) -> bool:
        for comment in self.client.list_issue_comments(owner, repo, pr_number):
            if not isinstance(comment, dict):
                continue
            author = ((comment.get("user") or {}).get("login") or "").lower()
            if author != self.bot_login:
                continue
            if comments.is_notification_comment(comment.get("body"), notification_type, issue_number):
                return True
        return False

    def comment(self, owner, repo, pr_number, body) -> None:
        self.client.create_comment(owner, repo, pr_number, body)


def notify_pending_prs(pr_ops, owner, repo, issue_number) -> int:
    """Tell linked open PRs that the issue is ready. Best effort; returns the count notified."""
    notified = 0
    try:
        linked = pr_ops.find_linked_open_prs(owner, repo, issue_number)
        if not linked:
            log_event("notifier", f"no open PRs linked to {owner}/{repo}#{issue_number}", level="debug")
            return 0
        for pr in linked:
            if labels.IMPLEMENTATION in pr.get("labels", []):
                continue
            number = pr["number"]
            if pr_ops.has_notification_comment(
                owner, repo, number, comments.NOTIFICATION_VOTING_PASSED, issue_number
            ):
                log_event("notifier", f"PR #{number} already notified for issue #{issue_number}", level="debug")
                continue
            body = comments.build_notification_comment(
                comments.issue_voting_passed_message(issue_number, pr.get("author") or "there"),
                issue_number,
                comments.NOTIFICATION_VOTING_PASSED,
            )
            pr_ops.comment(owner, repo, number, body)
            notified += 1
            log_event("notifier", f"notified PR #{number} that issue #{issue_number} is ready")
    except Exception as exc:
        log_event(
            "notifier",
            f"failed to notify PRs for {owner}/{repo}#{issue_number}: {exc}",
            level="warning",
        )
    return notified


if TYPE_CHECKING:
    _pr_operations_check: Type[PROperationsCapability] = PROperations
