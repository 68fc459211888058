"""Bot comment bodies with hidden metadata, and the parsers that find them."""

import json
import re
from datetime import datetime, timezone

METADATA_PREFIX = "hivemoot-metadata:"
VOTING_SIGNATURE = "React to THIS comment to vote"
HUMAN_HELP_SIGNATURE = "# Summoning the Humans"

ERROR_VOTING_COMMENT_NOT_FOUND = "VOTING_COMMENT_NOT_FOUND"
NOTIFICATION_VOTING_PASSED = "voting-passed"

_METADATA_RE = re.compile(r"<!--\s*hivemoot-metadata:\s*(\{.*?\})\s*-->", re.DOTALL)


def _now_iso():
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def metadata_tag(metadata):
    return f"<!-- {METADATA_PREFIX} {json.dumps(metadata, separators=(',', ':'))} -->"


def _build(content, metadata):
    return f"{metadata_tag(metadata)}\n{content}"


def _base(comment_type, issue_number):
    return {"version": 1, "type": comment_type, "createdAt": _now_iso(), "issueNumber": issue_number}


def build_voting_comment(content, issue_number, cycle):
    metadata = _base("voting", issue_number)
    metadata["cycle"] = cycle
    return _build(content, metadata)


def build_status_comment(content, issue_number):
    return _build(content, _base("status", issue_number))


def build_human_help_comment(content, issue_number, error_code):
    metadata = _base("error", issue_number)
    metadata["errorCode"] = error_code
    return _build(content, metadata)


def build_notification_comment(content, issue_number, notification_type):
    metadata = _base("notification", issue_number)
    metadata["notificationType"] = notification_type
    return _build(content, metadata)


def parse_metadata(body):
    if not isinstance(body, str):
        return None
    match = _METADATA_RE.search(body)
    if not match:
        return None
    try:
        metadata = json.loads(match.group(1))
    except ValueError:
        return None
    if not isinstance(metadata, dict) or metadata.get("version") != 1:
        return None
    return metadata


def is_voting_comment(body):
    metadata = parse_metadata(body)
    if metadata is not None:
        return metadata.get("type") == "voting"
    return isinstance(body, str) and VOTING_SIGNATURE in body


def is_human_help_comment(body, error_code):
    metadata = parse_metadata(body)
    return bool(metadata) and metadata.get("type") == "error" and metadata.get("errorCode") == error_code


def is_notification_comment(body, notification_type, issue_number=None):
    metadata = parse_metadata(body)
    if not metadata or metadata.get("type") != "notification":
        return False
    if metadata.get("notificationType") != notification_type:
        return False
    return issue_number is None or metadata.get("issueNumber") == issue_number


# Messages


def _tally(votes):
    return (
        f"👍 {votes.thumbs_up} · 👎 {votes.thumbs_down} · "
        f"😕 {votes.confused} · 👀 {votes.eyes}"
    )


def voting_start_message():
    return (
        "# 🐝 Voting Phase\n\n"
        "Discussion time is over. The proposal is now open for a vote.\n\n"
        f"**{VOTING_SIGNATURE}:**\n"
        "- 👍 Ready to implement\n"
        "- 👎 Reject\n"
        "- 😕 Needs more discussion\n"
        "- 👀 Needs human input\n\n"
        "Only one reaction per voter counts. Conflicting reactions are discarded."
    )


def voting_end_ready(votes):
    return f"# ✅ Ready to Implement\n\nThe hive has approved this proposal.\n\n{_tally(votes)}"


def voting_end_rejected(votes):
    return f"# ❌ Rejected\n\nThe hive has rejected this proposal.\n\n{_tally(votes)}"


def voting_end_inconclusive(votes):
    return (
        "# ⚖️ Inconclusive\n\nNo decision was reached. Voting is extended; "
        f"keep reacting on the voting comment above.\n\n{_tally(votes)}"
    )


def voting_end_inconclusive_final(votes):
    return (
        "# ⚖️ Inconclusive (final)\n\nExtended voting ended without a decision. "
        f"The proposal is closed.\n\n{_tally(votes)}"
    )


def voting_end_inconclusive_resolved(votes, outcome):
    titles = {
        "ready-to-implement": "✅ Ready to Implement",
        "rejected": "❌ Rejected",
        "needs-human-input": "👀 Needs Human Input",
    }
    return (
        f"# {titles.get(outcome, outcome)}\n\nExtended voting resolved the tie.\n\n{_tally(votes)}"
    )


def voting_end_needs_more_discussion(votes):
    return (
        "# 💬 Back to Discussion\n\nMost voters asked for more discussion. "
        f"The proposal returns to the discussion phase.\n\n{_tally(votes)}"
    )


def voting_end_needs_human_input(votes):
    return f"# 👀 Needs Human Input\n\nThe hive is asking for a human decision.\n\n{_tally(votes)}"


def voting_end_requirements_not_met(votes, shortfall, final):
    lines = ["# ⚖️ Inconclusive" + (" (final)" if final else ""), ""]
    if shortfall.reason == "quorum":
        lines.append(
            f"Quorum not reached: {shortfall.valid_voters} valid voter(s), "
            f"{shortfall.min_voters} required."
        )
    else:
        missing = ", ".join(f"@{user}" for user in shortfall.missing_required)
        lines.append(
            f"Required voters: {shortfall.required_participated} of "
            f"{shortfall.required_needed} participated. Missing: {missing}."
        )
    lines.append("")
    if final:
        lines.append("Extended voting ended without meeting the requirements. The proposal is closed.")
    else:
        lines.append("Voting is extended.")
    lines.extend(["", _tally(votes)])
    return "\n".join(lines)


def voting_comment_not_found_message():
    return (
        f"{HUMAN_HELP_SIGNATURE}\n\n"
        "This issue is in the voting phase but its voting comment could not be found "
        "or recreated. A maintainer needs to check the issue and restore the vote."
    )


def issue_voting_passed_message(issue_number, author):
    return (
        f"Hey @{author}! Issue #{issue_number} has passed voting and is ready to implement.\n\n"
        "Push a new commit or leave a comment to activate this PR for implementation tracking."
    )
