"""GitHub Actions provider module."""

from execution_tracker.providers.github_actions.config import GitHubActionsConfig
from execution_tracker.providers.github_actions.manifest import github_actions_manifest
from execution_tracker.providers.github_actions.provider import GitHubActionsProvider

__all__ = ["GitHubActionsConfig", "GitHubActionsProvider", "github_actions_manifest"]
