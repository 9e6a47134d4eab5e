"""Configuration for GitHub Actions provider."""

from pydantic import BaseModel, SecretStr


class GitHubActionsConfig(BaseModel):
    """Configuration for GitHub Actions provider."""

    token: SecretStr
    owner: str
    repo: str
    workflow_id: str
    api_base_url: str = "https://api.github.com"
    event_type: str = "quality-tracker-test-run"
    # A repository_dispatch creates its run asynchronously
    discovery_attempts: int = 10
    discovery_interval: float = 2.0
