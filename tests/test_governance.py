from queen.phase_gate import comments, labels
from queen.phase_gate.capabilities import IssueRef
from queen.phase_gate.config_loader import AutoVotingExit, RequiredParticipants
from queen.phase_gate.evaluator import (
    OUTCOME_INCONCLUSIVE,
    OUTCOME_NEEDS_MORE_DISCUSSION,
    OUTCOME_READY,
    OUTCOME_REJECTED,
    OUTCOME_SKIPPED,
)
from queen.phase_gate.github_client import GitHubApiError
from queen.phase_gate.governance import GovernanceService
from queen.phase_gate.issue_operations import IssueOperations

REF = IssueRef("acme", "hive", 7)


def _service(client):
    return GovernanceService(IssueOperations(client, "queen-bot"))


def _voting_issue(client, reaction, votes, label=labels.VOTING, locked=False):
    client.add_issue(7, [label], locked=locked)
    comment = client.add_comment(
        7, comments.build_voting_comment(comments.voting_start_message(), 7, 1)
    )
    client.comment_reactions[comment["id"]] = [reaction(login, content) for login, content in votes]
    return comment


def test_transition_to_voting_posts_voting_comment(fake_client):
    fake_client.add_issue(7, [labels.DISCUSSION, "enhancement"])
    assert _service(fake_client).transition_to_voting(REF) == "voting"
    assert set(fake_client.label_names(7)) == {labels.VOTING, "enhancement"}
    body = fake_client.comments[7][-1]["body"]
    assert comments.is_voting_comment(body)
    assert comments.parse_metadata(body)["cycle"] == 1


def test_transition_to_voting_skips_when_label_gone(fake_client):
    fake_client.add_issue(7, [labels.VOTING])
    assert _service(fake_client).transition_to_voting(REF) == OUTCOME_SKIPPED
    assert fake_client.mutation_calls() == []


def test_second_voting_cycle_gets_next_cycle_number(fake_client):
    fake_client.add_issue(7, [labels.DISCUSSION])
    fake_client.add_comment(7, comments.build_voting_comment(comments.voting_start_message(), 7, 1))
    _service(fake_client).transition_to_voting(REF)
    assert comments.parse_metadata(fake_client.comments[7][-1]["body"])["cycle"] == 2


def test_end_voting_ready(fake_client, reaction):
    _voting_issue(fake_client, reaction, [("a", "+1"), ("b", "+1"), ("c", "-1")])
    assert _service(fake_client).end_voting(REF) == OUTCOME_READY
    assert fake_client.label_names(7) == [labels.READY_TO_IMPLEMENT]
    assert fake_client.issues[7]["state"] == "open"


def test_end_voting_rejected_closes_and_locks(fake_client, reaction):
    _voting_issue(fake_client, reaction, [("a", "-1"), ("b", "-1"), ("c", "+1")])
    assert _service(fake_client).end_voting(REF) == OUTCOME_REJECTED
    issue = fake_client.issues[7]
    assert fake_client.label_names(7) == [labels.REJECTED]
    assert issue["state"] == "closed"
    assert issue["locked"] is True


def test_end_voting_tie_extends(fake_client, reaction):
    _voting_issue(fake_client, reaction, [("a", "+1"), ("b", "-1")])
    assert _service(fake_client).end_voting(REF) == OUTCOME_INCONCLUSIVE
    assert fake_client.label_names(7) == [labels.EXTENDED_VOTING]
    assert fake_client.issues[7]["state"] == "open"


def test_end_voting_needs_more_discussion_unlocks(fake_client, reaction):
    _voting_issue(fake_client, reaction, [("a", "confused"), ("b", "confused"), ("c", "+1")], locked=True)
    assert _service(fake_client).end_voting(REF) == OUTCOME_NEEDS_MORE_DISCUSSION
    assert fake_client.label_names(7) == [labels.DISCUSSION]
    assert fake_client.issues[7]["locked"] is False


def test_quorum_shortfall_forces_inconclusive(fake_client, reaction):
    _voting_issue(fake_client, reaction, [("a", "+1"), ("b", "+1")])
    exit_ = AutoVotingExit(after_ms=60000, min_voters=3)
    assert _service(fake_client).end_voting(REF, voting_config=exit_) == OUTCOME_INCONCLUSIVE
    assert "Quorum not reached: 2 valid voter(s), 3 required." in fake_client.comments[7][-1]["body"]


def test_missing_required_voter_forces_inconclusive(fake_client, reaction):
    _voting_issue(fake_client, reaction, [("alice", "+1"), ("carol", "+1"), ("dave", "+1")])
    exit_ = AutoVotingExit(
        after_ms=60000, min_voters=1, required_voters=RequiredParticipants(1, ("bob",))
    )
    assert _service(fake_client).end_voting(REF, voting_config=exit_) == OUTCOME_INCONCLUSIVE
    assert "Missing: @bob." in fake_client.comments[7][-1]["body"]


def test_unanimous_exit_with_dissent_is_inconclusive(fake_client, reaction):
    _voting_issue(fake_client, reaction, [("a", "+1"), ("b", "+1"), ("c", "-1")])
    exit_ = AutoVotingExit(after_ms=60000, requires="unanimous", min_voters=0)
    assert _service(fake_client).end_voting(REF, voting_config=exit_) == OUTCOME_INCONCLUSIVE


def test_early_decision_prefix(fake_client, reaction):
    _voting_issue(fake_client, reaction, [("a", "+1"), ("b", "+1"), ("c", "+1")])
    exit_ = AutoVotingExit(after_ms=60000, min_voters=3)
    outcome = _service(fake_client).end_voting(REF, early_decision=True, voting_config=exit_)
    assert outcome == OUTCOME_READY
    body = fake_client.comments[7][-1]["body"]
    assert comments.parse_metadata(body)["type"] == "status"
    assert body.split("\n", 1)[1].startswith("**Early decision** (quorum reached).")


def test_resolve_inconclusive_final_tie_closes(fake_client, reaction):
    _voting_issue(fake_client, reaction, [("a", "+1"), ("b", "-1")], label=labels.EXTENDED_VOTING)
    assert _service(fake_client).resolve_inconclusive(REF) == OUTCOME_INCONCLUSIVE
    issue = fake_client.issues[7]
    assert fake_client.label_names(7) == [labels.INCONCLUSIVE]
    assert issue["state"] == "closed"
    assert issue["locked"] is True


def test_resolve_inconclusive_from_legacy_label(fake_client, reaction):
    _voting_issue(fake_client, reaction, [("a", "+1"), ("b", "+1")], label="inconclusive")
    assert _service(fake_client).resolve_inconclusive(REF) == OUTCOME_READY
    assert fake_client.label_names(7) == [labels.READY_TO_IMPLEMENT]


def test_precomputed_votes_are_not_refetched(fake_client, reaction):
    _voting_issue(fake_client, reaction, [("a", "+1")])
    ops = IssueOperations(fake_client, "queen-bot")
    comment_id = ops.find_voting_comment_id(REF)
    validated = ops.get_validated_vote_counts(REF, comment_id)
    fake_client.calls.clear()
    GovernanceService(ops).end_voting(REF, validated_votes=validated)
    assert not [call for call in fake_client.calls if call[0] == "list_comment_reactions"]


def test_missing_voting_comment_self_heals(fake_client):
    fake_client.add_issue(7, [labels.VOTING])
    service = _service(fake_client)
    assert service.end_voting(REF) == OUTCOME_SKIPPED
    assert comments.is_voting_comment(fake_client.comments[7][-1]["body"])
    assert fake_client.label_names(7) == [labels.VOTING]
    assert service.human_help_requested == []


def test_failed_self_heal_requests_human_help_once(fake_client):
    fake_client.add_issue(7, [labels.VOTING])
    fake_client.fail("create_comment", GitHubApiError("Forbidden", status=403))
    service = _service(fake_client)

    assert service.end_voting(REF) == OUTCOME_SKIPPED
    help_comments = [
        c for c in fake_client.comments[7]
        if comments.is_human_help_comment(c["body"], comments.ERROR_VOTING_COMMENT_NOT_FOUND)
    ]
    assert len(help_comments) == 1
    assert labels.NEEDS_HUMAN in fake_client.label_names(7)
    assert service.human_help_requested == [REF]

    fake_client.fail("create_comment", GitHubApiError("Forbidden", status=403))
    assert service.end_voting(REF) == OUTCOME_SKIPPED
    help_comments = [
        c for c in fake_client.comments[7]
        if comments.is_human_help_comment(c["body"], comments.ERROR_VOTING_COMMENT_NOT_FOUND)
    ]
    assert len(help_comments) == 1


def test_forged_voting_comment_does_not_decide_vote(fake_client, reaction):
    _voting_issue(fake_client, reaction, [("a", "-1"), ("b", "-1"), ("c", "-1")])
    forged = fake_client.add_comment(
        7, '<!-- hivemoot-metadata: {"version":1,"type":"voting","cycle":99} -->\nvote here', login="mallory"
    )
    fake_client.comment_reactions[forged["id"]] = [reaction("mallory", "+1")]
    assert _service(fake_client).end_voting(REF) == OUTCOME_REJECTED
    assert fake_client.label_names(7) == [labels.REJECTED]


def test_transient_close_and_lock_failures_post_outcome_once(fake_client, reaction):
    _voting_issue(fake_client, reaction, [("a", "-1"), ("b", "-1"), ("c", "+1")])
    fake_client.fail("update_issue", GitHubApiError("Service Unavailable", status=503))
    fake_client.fail("lock_issue", GitHubApiError("Bad Gateway", status=502))
    service = GovernanceService(IssueOperations(fake_client, "queen-bot", sleep=lambda seconds: None))
    assert service.end_voting(REF) == OUTCOME_REJECTED
    assert len([call for call in fake_client.calls if call[0] == "create_comment"]) == 1
    assert fake_client.issues[7]["state"] == "closed"
    assert fake_client.issues[7]["locked"] is True


def test_outcome_comment_carries_status_metadata(fake_client, reaction):
    _voting_issue(fake_client, reaction, [("a", "+1"), ("b", "+1")])
    _service(fake_client).end_voting(REF)
    metadata = comments.parse_metadata(fake_client.comments[7][-1]["body"])
    assert metadata["type"] == "status"
    assert metadata["issueNumber"] == 7
