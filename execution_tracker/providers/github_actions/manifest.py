"""Manifest registered under the ``github-actions`` provider key."""

from execution_tracker.providers.github_actions.config import GitHubActionsConfig
from execution_tracker.providers.github_actions.provider import GitHubActionsProvider
from execution_tracker.providers.manifest import ProviderManifest

github_actions_manifest: ProviderManifest[GitHubActionsConfig] = ProviderManifest(
    config_cls=GitHubActionsConfig,
    provider_factory=GitHubActionsProvider.from_config,
)
