"""Pydantic models for GitHub Actions API responses."""

from collections.abc import Sequence
from datetime import datetime
from typing import Literal

from pydantic import BaseModel

type WorkflowRunStatus = Literal[
    "queued",
    "in_progress",
    "completed",
    "requested",
    "waiting",
    "pending",
]


class WorkflowRun(BaseModel):
    """A workflow run from GitHub Actions API."""

    id: int
    status: WorkflowRunStatus
    conclusion: str | None = None
    html_url: str
    url: str | None = None
    created_at: datetime
    updated_at: datetime


class WorkflowRunsResponse(BaseModel):
    """Response from list workflow runs API."""

    workflow_runs: Sequence[WorkflowRun] = ()


class WorkflowArtifact(BaseModel):
    """An artifact uploaded by a workflow run."""

    id: int
    name: str
    size_in_bytes: int = 0
    expired: bool = False


class ArtifactsResponse(BaseModel):
    """Response from list workflow run artifacts API."""

    artifacts: Sequence[WorkflowArtifact] = ()
