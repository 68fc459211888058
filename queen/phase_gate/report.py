import json

from queen.phase_gate.logger import log_event
from queen.phase_gate.retry import ACCESS_FORBIDDEN, ACCESS_RATE_LIMIT


def new_repository_result(repo):
    return {
        "repo": repo,
        "skipped_reconcile": False,
        "transitions": [],
        "human_help_issues": [],
        "access_issues": [],
        "failed_issues": [],
        "repaired_comments": [],
    }


def repository_report(result):
    payload = {
        "repo": result["repo"],
        "skipped_reconcile": result["skipped_reconcile"],
        "transitions": len(result["transitions"]),
        "human_help": len(result["human_help_issues"]),
        "access_issues": len(result["access_issues"]),
        "failed_issues": len(result["failed_issues"]),
        "repaired_comments": len(result["repaired_comments"]),
    }
    return "RECONCILE_REPO " + json.dumps(payload, sort_keys=True)


def _refs(entries):
    return [f"{entry['repo']}#{entry['issue_number']}" for entry in entries]


def summarize_run(results, failed_repos, failed_installations=0):
    human_help = [entry for result in results for entry in result["human_help_issues"]]
    access = [entry for result in results for entry in result["access_issues"]]
    failed_issues = [entry for result in results for entry in result["failed_issues"]]
    return {
        "repositories": len(results),
        "failed_repositories": sorted(failed_repos),
        "failed_installations": failed_installations,
        "transitions": sum(len(result["transitions"]) for result in results),
        "needs_human": _refs(human_help),
        "rate_limited": _refs([entry for entry in access if entry["reason"] == ACCESS_RATE_LIMIT]),
        "forbidden": _refs([entry for entry in access if entry["reason"] == ACCESS_FORBIDDEN]),
        "failed_issues": _refs(failed_issues),
    }


def log_run_summary(summary):
    if summary["needs_human"]:
        log_event(
            "summary",
            (
                f"{len(summary['needs_human'])} issue(s) skipped due to missing voting comments: "
                f"{', '.join(summary['needs_human'])}. Human intervention requested."
            ),
            level="warning",
        )
    if summary["rate_limited"]:
        log_event(
            "summary",
            f"Rate limited on {len(summary['rate_limited'])} issue(s): {', '.join(summary['rate_limited'])}",
            level="warning",
        )
    if summary["forbidden"]:
        log_event(
            "summary",
            f"Forbidden on {len(summary['forbidden'])} issue(s): {', '.join(summary['forbidden'])}",
            level="warning",
        )
    if summary["failed_issues"]:
        log_event(
            "summary",
            f"Failed on {len(summary['failed_issues'])} issue(s): {', '.join(summary['failed_issues'])}",
            level="error",
        )


def run_summary_report(summary):
    return "RECONCILE_SUMMARY " + json.dumps(summary, sort_keys=True)
