"""Discovery of CI provider plugins registered as entry points."""

from collections.abc import Sequence
from importlib.metadata import entry_points
from typing import Any

from execution_tracker.providers.manifest import ProviderManifest

ENTRY_POINT_GROUP = "execution_tracker.providers"


class ProviderNotFoundError(Exception):
    """Raised when no provider plugin is registered under a key."""


def available_provider_keys() -> Sequence[str]:
    """Keys of every installed provider plugin, sorted."""
    return sorted(entry.name for entry in entry_points(group=ENTRY_POINT_GROUP))


def load_provider_manifest(key: str) -> ProviderManifest[Any]:
    """Load the manifest of the provider registered under ``key``.

    Raises:
        ProviderNotFoundError: If no provider with the given key is installed

    """
    matches = entry_points(group=ENTRY_POINT_GROUP, name=key)
    for entry in matches:
        manifest: ProviderManifest[Any] = entry.load()
        return manifest

    raise ProviderNotFoundError(
        f"Provider '{key}' not found. "
        f"Available providers: {list(available_provider_keys())}"
    )
