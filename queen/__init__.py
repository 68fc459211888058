"""Scheduled governance phase reconciler."""

from queen.environment import EnvironmentConfigError, load_environment
from queen.reconciler import process_repository, run_for_all_repositories

__all__ = ["EnvironmentConfigError", "load_environment", "process_repository", "run_for_all_repositories"]
