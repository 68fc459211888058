from datetime import datetime, timedelta, timezone

from queen.phase_gate import comments, labels
from queen.phase_gate.config_loader import (
    AutoDiscussionExit,
    AutoVotingExit,
    EffectiveConfig,
    ManualExit,
)
from queen.phase_gate.evaluator import OUTCOME_INCONCLUSIVE, OUTCOME_READY
from queen.phase_gate.github_client import GitHubApiError
from queen.phase_gate.governance import GovernanceService
from queen.phase_gate.issue_operations import IssueOperations
from queen.phase_gate.notifier import PROperations
from queen.phase_gate.phases import PhaseReconciler

NOW = datetime(2026, 1, 10, tzinfo=timezone.utc)

TWO_STAGE_VOTING = EffectiveConfig(
    voting=(AutoVotingExit(after_ms=60000, min_voters=2), AutoVotingExit(after_ms=120000, min_voters=3)),
)


def _at(seconds_ago):
    return (NOW - timedelta(seconds=seconds_ago)).strftime("%Y-%m-%dT%H:%M:%SZ")


def _reconciler(client):
    issues = IssueOperations(client, "queen-bot", sleep=lambda seconds: None)
    return PhaseReconciler(
        client,
        issues,
        GovernanceService(issues),
        PROperations(client, "queen-bot"),
        "acme",
        "hive",
        now=lambda: NOW,
        sleep=lambda seconds: None,
    )


def _voting_issue(client, labeled_event, reaction, number, seconds_ago, votes, label=labels.VOTING, timeline=()):
    client.add_issue(number, [label], timeline=[labeled_event(label, _at(seconds_ago))] + list(timeline))
    comment = client.add_comment(
        number, comments.build_voting_comment(comments.voting_start_message(), number, 1)
    )
    client.comment_reactions[comment["id"]] = [reaction(login, content) for login, content in votes]


def test_first_elapsed_exit_triggers_early_decision(fake_client, labeled_event, reaction):
    _voting_issue(fake_client, labeled_event, reaction, 7, 70, [("a", "+1"), ("b", "+1")])
    result = _reconciler(fake_client).run(TWO_STAGE_VOTING)
    assert result["transitions"] == [{"issue_number": 7, "phase": "voting", "outcome": OUTCOME_READY}]
    assert fake_client.label_names(7) == [labels.READY_TO_IMPLEMENT]
    assert "**Early decision**" in fake_client.comments[7][-1]["body"]


def test_looser_early_exit_wins_over_unanimous_deadline(fake_client, labeled_event, reaction):
    config = EffectiveConfig(
        voting=(
            AutoVotingExit(after_ms=60000, requires="majority", min_voters=1),
            AutoVotingExit(after_ms=120000, requires="unanimous", min_voters=3),
        ),
    )
    _voting_issue(fake_client, labeled_event, reaction, 7, 70, [("a", "+1"), ("b", "+1")])
    result = _reconciler(fake_client).run(config)
    assert [t["outcome"] for t in result["transitions"]] == [OUTCOME_READY]


def test_unmet_early_exit_waits_for_deadline(fake_client, labeled_event, reaction):
    config = EffectiveConfig(
        voting=(AutoVotingExit(after_ms=60000, min_voters=3), AutoVotingExit(after_ms=120000, min_voters=2)),
    )
    _voting_issue(fake_client, labeled_event, reaction, 7, 70, [("a", "+1"), ("b", "+1")])
    result = _reconciler(fake_client).run(config)
    assert result["transitions"] == []
    assert fake_client.mutation_calls() == []


def test_deadline_uses_last_exit_requirements(fake_client, labeled_event, reaction):
    _voting_issue(fake_client, labeled_event, reaction, 7, 130, [("a", "+1"), ("b", "+1")])
    result = _reconciler(fake_client).run(TWO_STAGE_VOTING)
    assert result["transitions"] == [{"issue_number": 7, "phase": "voting", "outcome": OUTCOME_INCONCLUSIVE}]
    assert fake_client.label_names(7) == [labels.EXTENDED_VOTING]
    assert "Quorum not reached: 2 valid voter(s), 3 required." in fake_client.comments[7][-1]["body"]


def test_single_exit_has_no_early_check(fake_client, labeled_event, reaction):
    config = EffectiveConfig(voting=(AutoVotingExit(after_ms=120000, min_voters=1),))
    _voting_issue(fake_client, labeled_event, reaction, 7, 70, [("a", "+1"), ("b", "+1")])
    result = _reconciler(fake_client).run(config)
    assert result["transitions"] == []
    assert not [call for call in fake_client.calls if call[0] == "list_comment_reactions"]


def test_extended_voting_deadline_closes_tie(fake_client, labeled_event, reaction):
    config = EffectiveConfig(extended_voting=(AutoVotingExit(after_ms=60000, min_voters=0),))
    _voting_issue(
        fake_client, labeled_event, reaction, 7, 90, [("a", "+1"), ("b", "-1")], label=labels.EXTENDED_VOTING
    )
    result = _reconciler(fake_client).run(config)
    assert result["transitions"][0]["phase"] == "extended_voting"
    assert fake_client.label_names(7) == [labels.INCONCLUSIVE]
    assert fake_client.issues[7]["state"] == "closed"


def test_discussion_deadline_moves_to_voting(fake_client, labeled_event):
    config = EffectiveConfig(discussion=(AutoDiscussionExit(after_ms=60000),))
    fake_client.add_issue(7, [labels.DISCUSSION], timeline=[labeled_event(labels.DISCUSSION, _at(61))])
    result = _reconciler(fake_client).run(config)
    assert result["transitions"] == [{"issue_number": 7, "phase": "discussion", "outcome": "voting"}]
    assert fake_client.label_names(7) == [labels.VOTING]
    assert result["repaired_comments"] == []


def test_discussion_early_exit_on_readiness(fake_client, labeled_event, reaction):
    config = EffectiveConfig(
        discussion=(AutoDiscussionExit(after_ms=60000, min_ready=2), AutoDiscussionExit(after_ms=600000)),
    )
    fake_client.add_issue(7, [labels.DISCUSSION], timeline=[labeled_event(labels.DISCUSSION, _at(70))])
    fake_client.issue_reactions[7] = [reaction("alice", "+1"), reaction("bob", "+1")]
    result = _reconciler(fake_client).run(config)
    assert [t["outcome"] for t in result["transitions"]] == ["voting"]


def test_unknown_label_time_is_skipped(fake_client):
    config = EffectiveConfig(discussion=(AutoDiscussionExit(after_ms=60000),))
    fake_client.add_issue(7, [labels.DISCUSSION], timeline=[])
    result = _reconciler(fake_client).run(config)
    assert result["transitions"] == []
    assert result["failed_issues"] == []
    assert fake_client.mutation_calls() == []


def test_legacy_and_canonical_labels_processed_once(fake_client, labeled_event):
    config = EffectiveConfig(discussion=(AutoDiscussionExit(after_ms=60000),))
    fake_client.add_issue(
        7,
        [labels.DISCUSSION, "phase:discussion"],
        timeline=[labeled_event(labels.DISCUSSION, _at(61))],
    )
    result = _reconciler(fake_client).run(config)
    assert len(result["transitions"]) == 1
    timeline_reads = [call for call in fake_client.calls if call[0] == "list_timeline" and call[1] == 7]
    assert len(timeline_reads) == 1


def test_pull_requests_are_ignored(fake_client, labeled_event):
    config = EffectiveConfig(discussion=(AutoDiscussionExit(after_ms=60000),))
    fake_client.add_issue(
        9, [labels.DISCUSSION], timeline=[labeled_event(labels.DISCUSSION, _at(61))], pull_request=True
    )
    result = _reconciler(fake_client).run(config)
    assert result["transitions"] == []


def test_manual_only_repo_skips_reconcile_but_repairs(fake_client, labeled_event):
    config = EffectiveConfig(discussion=(ManualExit(),), voting=(ManualExit(),), extended_voting=(ManualExit(),))
    fake_client.add_issue(7, [labels.VOTING], timeline=[labeled_event(labels.VOTING, _at(99999))])
    fake_client.add_issue(8, [labels.DISCUSSION], timeline=[labeled_event(labels.DISCUSSION, _at(99999))])
    result = _reconciler(fake_client).run(config)
    assert result["skipped_reconcile"] is True
    assert result["transitions"] == []
    assert result["repaired_comments"] == [7]
    assert [call[0] for call in fake_client.mutation_calls()] == ["create_comment"]
    assert fake_client.label_names(7) == [labels.VOTING]


def test_rate_limited_issue_recorded_and_others_continue(fake_client, labeled_event, reaction):
    config = EffectiveConfig(discussion=(AutoDiscussionExit(after_ms=60000),))
    fake_client.add_issue(7, [labels.DISCUSSION], timeline=[labeled_event(labels.DISCUSSION, _at(61))])
    fake_client.add_issue(8, [labels.DISCUSSION], timeline=[labeled_event(labels.DISCUSSION, _at(61))])
    fake_client.fail(
        "list_timeline",
        GitHubApiError("API rate limit exceeded", status=429, headers={"Retry-After": "3600"}),
    )
    result = _reconciler(fake_client).run(config)
    assert result["access_issues"] == [
        {"repo": "acme/hive", "issue_number": 7, "status": 429, "reason": "rate_limit"}
    ]
    assert [t["issue_number"] for t in result["transitions"]] == [8]


def test_forbidden_issue_recorded(fake_client, labeled_event):
    config = EffectiveConfig(discussion=(AutoDiscussionExit(after_ms=60000),))
    fake_client.add_issue(7, [labels.DISCUSSION], timeline=[labeled_event(labels.DISCUSSION, _at(61))])
    fake_client.fail("add_labels", GitHubApiError("Resource not accessible by integration", status=403))
    result = _reconciler(fake_client).run(config)
    assert result["access_issues"][0]["reason"] == "forbidden"
    assert result["failed_issues"] == []


def test_deleted_issue_is_skipped(fake_client, labeled_event):
    config = EffectiveConfig(discussion=(AutoDiscussionExit(after_ms=60000),))
    fake_client.add_issue(7, [labels.DISCUSSION])
    del fake_client.timeline[7]
    result = _reconciler(fake_client).run(config)
    assert result["access_issues"] == []
    assert result["failed_issues"] == []


def test_unexpected_error_is_isolated_per_issue(fake_client, labeled_event):
    config = EffectiveConfig(discussion=(AutoDiscussionExit(after_ms=60000),))
    fake_client.add_issue(7, [labels.DISCUSSION], timeline=[labeled_event(labels.DISCUSSION, _at(61))])
    fake_client.add_issue(8, [labels.DISCUSSION], timeline=[labeled_event(labels.DISCUSSION, _at(61))])
    fake_client.fail("list_timeline", GitHubApiError("Server Error", status=500))
    result = _reconciler(fake_client).run(config)
    assert [entry["issue_number"] for entry in result["failed_issues"]] == [7]
    assert [t["issue_number"] for t in result["transitions"]] == [8]


def test_early_check_failure_defers_to_timer(fake_client, labeled_event, reaction):
    _voting_issue(fake_client, labeled_event, reaction, 7, 70, [("a", "+1"), ("b", "+1")])
    fake_client.fail("list_comment_reactions", GitHubApiError("Server Error", status=500))
    result = _reconciler(fake_client).run(TWO_STAGE_VOTING)
    assert result["transitions"] == []
    assert result["failed_issues"] == []
    assert fake_client.mutation_calls() == []


def test_early_check_access_error_is_recorded(fake_client, labeled_event, reaction):
    _voting_issue(fake_client, labeled_event, reaction, 7, 70, [("a", "+1"), ("b", "+1")])
    fake_client.fail("list_comment_reactions", GitHubApiError("Forbidden", status=403))
    result = _reconciler(fake_client).run(TWO_STAGE_VOTING)
    assert result["access_issues"][0]["reason"] == "forbidden"


def test_transient_transition_failure_is_retried(fake_client, labeled_event):
    config = EffectiveConfig(discussion=(AutoDiscussionExit(after_ms=60000),))
    fake_client.add_issue(7, [labels.DISCUSSION], timeline=[labeled_event(labels.DISCUSSION, _at(61))])
    fake_client.fail("add_labels", GitHubApiError("Service Unavailable", status=503))
    result = _reconciler(fake_client).run(config)
    assert [t["outcome"] for t in result["transitions"]] == ["voting"]
    assert fake_client.label_names(7) == [labels.VOTING]


def test_ready_outcome_notifies_linked_prs(fake_client, labeled_event, reaction):
    cross_ref = {
        "event": "cross-referenced",
        "source": {
            "issue": {
                "number": 12,
                "state": "open",
                "pull_request": {"url": "x"},
                "user": {"login": "worker"},
                "repository": {"full_name": "acme/hive"},
                "labels": [],
            }
        },
    }
    _voting_issue(
        fake_client, labeled_event, reaction, 7, 70, [("a", "+1"), ("b", "+1")], timeline=[cross_ref]
    )
    fake_client.add_issue(12, [], pull_request=True)
    _reconciler(fake_client).run(TWO_STAGE_VOTING)
    assert comments.is_notification_comment(
        fake_client.comments[12][-1]["body"], comments.NOTIFICATION_VOTING_PASSED, 7
    )


def test_missing_voting_comment_reported_as_human_help(fake_client, labeled_event):
    config = EffectiveConfig(voting=(AutoVotingExit(after_ms=60000),))
    fake_client.add_issue(7, [labels.VOTING], timeline=[labeled_event(labels.VOTING, _at(61))])
    fake_client.fail("create_comment", GitHubApiError("Forbidden", status=403))
    result = _reconciler(fake_client).run(config)
    assert result["human_help_issues"] == [{"repo": "acme/hive", "issue_number": 7}]
    assert result["transitions"] == []


def test_transient_remove_label_failure_posts_one_voting_comment(fake_client, labeled_event):
    config = EffectiveConfig(discussion=(AutoDiscussionExit(after_ms=60000),))
    fake_client.add_issue(7, [labels.DISCUSSION], timeline=[labeled_event(labels.DISCUSSION, _at(61))])
    fake_client.fail("remove_label", GitHubApiError("Service Unavailable", status=503))
    result = _reconciler(fake_client).run(config)
    assert [t["outcome"] for t in result["transitions"]] == ["voting"]
    assert len([call for call in fake_client.calls if call[0] == "create_comment"]) == 1
    assert fake_client.label_names(7) == [labels.VOTING]


def test_interrupted_transition_resumes_on_next_run(fake_client, labeled_event):
    config = EffectiveConfig(discussion=(AutoDiscussionExit(after_ms=60000),))
    fake_client.add_issue(7, [labels.DISCUSSION], timeline=[labeled_event(labels.DISCUSSION, _at(61))])
    fake_client.fail("remove_label", GitHubApiError("Server Error", status=500))
    first = _reconciler(fake_client).run(config)
    assert [entry["issue_number"] for entry in first["failed_issues"]] == [7]
    assert set(fake_client.label_names(7)) == {labels.DISCUSSION, labels.VOTING}

    second = _reconciler(fake_client).run(config)
    assert [t["outcome"] for t in second["transitions"]] == ["voting"]
    assert fake_client.label_names(7) == [labels.VOTING]
    voting_comments = [c for c in fake_client.comments[7] if comments.is_voting_comment(c["body"])]
    assert len(voting_comments) == 1
    assert comments.parse_metadata(voting_comments[0]["body"])["cycle"] == 1
