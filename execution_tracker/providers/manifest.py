"""Entry-point manifest describing a CI provider plugin."""

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass

from pydantic import BaseModel

from execution_tracker.providers.base import PipelineProvider

type ProviderFactory[ConfigT] = Callable[
    [ConfigT], AbstractAsyncContextManager[PipelineProvider]
]


@dataclass(frozen=True, kw_only=True)
class ProviderManifest[ConfigT: BaseModel]:
    """What the CLI needs to run against a CI system.

    ``config_cls`` validates the JSON configuration given on the command line
    and ``provider_factory`` opens a provider bound to that configuration for
    the lifetime of one tracked run.
    """

    config_cls: type[ConfigT]
    provider_factory: ProviderFactory[ConfigT]
