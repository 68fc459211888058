"""Scheduled governance reconciler.

Runs once per invocation (cron) over every configured or discovered
installation and the repositories it can reach.
"""

import sys
import time

from queen.environment import EnvironmentConfigError, load_environment
from queen.phase_gate import (
    GitHubApp,
    GitHubClient,
    GovernanceService,
    IssueOperations,
    PhaseReconciler,
    PROperations,
    load_repository_config,
    log_run_summary,
    repository_report,
    run_summary_report,
    summarize_run,
    with_retry,
)
from queen.phase_gate.logger import log_event


def process_repository(client, owner, repo, bot_login, retry_policy=None, sleep=time.sleep):
    # Resolved on every run, never cached.
    config = load_repository_config(client, owner, repo)
    issues = IssueOperations(client, bot_login, retry_policy=retry_policy, sleep=sleep)
    reconciler = PhaseReconciler(
        client,
        issues,
        GovernanceService(issues),
        PROperations(client, bot_login),
        owner,
        repo,
        retry_policy=retry_policy,
        sleep=sleep,
    )
    return reconciler.run(config)


def installation_repositories(client, installation, retry_policy=None, sleep=time.sleep):
    configured = installation.get("repositories")
    if configured is not None:
        return [tuple(name.split("/", 1)) for name in configured]
    repos = with_retry(
        lambda: list(client.list_installation_repositories()),
        policy=retry_policy,
        label="list installation repositories",
        sleep=sleep,
    )
    selected = []
    for repo in repos:
        if not isinstance(repo, dict) or repo.get("archived"):
            continue
        owner = (repo.get("owner") or {}).get("login")
        name = repo.get("name")
        if owner and name:
            selected.append((owner, name))
    return sorted(selected)


def discover_installations(github_app, bot_login, retry_policy=None, sleep=time.sleep):
    """Installations of the app, plus the bot login when none is configured."""
    installations = with_retry(
        github_app.installations, policy=retry_policy, label="list app installations", sleep=sleep
    )
    if not bot_login:
        bot_login = with_retry(github_app.bot_login, policy=retry_policy, label="get app", sleep=sleep)
    return installations, bot_login


def run_for_all_repositories(
    environment,
    client_factory=GitHubClient,
    process=process_repository,
    sleep=time.sleep,
    app_factory=GitHubApp,
):
    retry_policy = environment.get("retry_policy")
    bot_login = environment.get("bot_login")
    results = []
    failed_repos = []
    failed_installations = 0

    github_app = None
    installations = environment.get("installations", [])
    app = environment.get("app")
    if app:
        github_app = app_factory(
            environment["api_base"], app["app_id"], app["private_key"], client_factory=client_factory
        )
        try:
            installations, bot_login = discover_installations(github_app, bot_login, retry_policy, sleep=sleep)
        except Exception as exc:
            failed_installations += 1
            installations = []
            log_event("reconciler", f"app={app['app_id']} installation discovery failed: {exc}", level="error")

    log_event("reconciler", f"starting scheduled reconciliation installations={len(installations)}")
    for installation in installations:
        label = f"installation={installation.get('id')} ({installation.get('login') or '-'})"
        try:
            headers = installation.get("headers")
            if headers is None:
                headers = with_retry(
                    lambda: github_app.installation_headers(installation["id"]),
                    policy=retry_policy,
                    label=f"{label} access token",
                    sleep=sleep,
                )
            client = client_factory(environment["api_base"], headers=headers)
            repositories = installation_repositories(client, installation, retry_policy, sleep=sleep)
        except Exception as exc:
            failed_installations += 1
            log_event("reconciler", f"{label} failed: {exc}", level="error")
            continue

        log_event("reconciler", f"{label} repositories={len(repositories)}")
        for owner, repo in repositories:
            full_name = f"{owner}/{repo}"
            try:
                result = process(
                    client, owner, repo, bot_login=bot_login, retry_policy=retry_policy, sleep=sleep
                )
            except Exception as exc:
                failed_repos.append(full_name)
                log_event("reconciler", f"repo={full_name} failed: {exc}", level="error")
                continue
            results.append(result)
            print(repository_report(result))

    summary = summarize_run(results, failed_repos, failed_installations)
    log_run_summary(summary)
    return summary


def exit_code(summary):
    if summary["failed_repositories"] or summary["failed_installations"]:
        return 1
    return 0


def main():
    try:
        environment = load_environment()
    except EnvironmentConfigError as exc:
        log_event("reconciler", f"FAIL_CLOSED reason={exc}", level="error")
        sys.exit(1)

    summary = run_for_all_repositories(environment)
    print(run_summary_report(summary))
    code = exit_code(summary)
    if code:
        log_event(
            "reconciler",
            f"failed to process repositories={summary['failed_repositories']} "
            f"installations={summary['failed_installations']}",
            level="error",
        )
    else:
        log_event("reconciler", "scheduled reconciliation completed successfully")
    sys.exit(code)


if __name__ == "__main__":
    main()
