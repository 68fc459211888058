from queen.phase_gate.capabilities import (
    IssueRef,
)
from queen.phase_gate.config_loader import (
    AutoDiscussionExit,
    AutoVotingExit,
    EffectiveConfig,
    ManualExit,
    RequiredParticipants,
    has_auto_exits,
    load_repository_config,
    resolve_config,
)
from queen.phase_gate.evaluator import (
    is_discussion_exit_eligible,
    is_exit_eligible,
)
from queen.phase_gate.github_client import (
    GitHubApiError,
    GitHubClient,
)
from queen.phase_gate.github_app import (
    GitHubApp,
)
from queen.phase_gate.governance import (
    GovernanceService,
)
from queen.phase_gate.issue_operations import (
    IssueOperations,
)
from queen.phase_gate.notifier import (
    PROperations,
    notify_pending_prs,
)
from queen.phase_gate.phases import (
    PhaseReconciler,
)
from queen.phase_gate.report import (
    log_run_summary,
    repository_report,
    run_summary_report,
    summarize_run,
)
from queen.phase_gate.retry import (
    RetryBudgetExceeded,
    RetryPolicy,
    classify_access_issue,
    is_rate_limit_error,
    is_retryable_error,
    with_retry,
)
from queen.phase_gate.votes import (
    ValidatedVoteResult,
    VoteCounts,
    validate_votes,
)

__all__ = [
    "AutoDiscussionExit",
    "AutoVotingExit",
    "EffectiveConfig",
    "GitHubApiError",
    "GitHubApp",
    "GitHubClient",
    "GovernanceService",
    "IssueOperations",
    "IssueRef",
    "ManualExit",
    "PROperations",
    "PhaseReconciler",
    "RequiredParticipants",
    "RetryBudgetExceeded",
    "RetryPolicy",
    "ValidatedVoteResult",
    "VoteCounts",
    "classify_access_issue",
    "has_auto_exits",
    "is_discussion_exit_eligible",
    "is_exit_eligible",
    "is_rate_limit_error",
    "is_retryable_error",
    "load_repository_config",
    "log_run_summary",
    "notify_pending_prs",
    "repository_report",
    "resolve_config",
    "run_summary_report",
    "summarize_run",
    "validate_votes",
    "with_retry",
]
