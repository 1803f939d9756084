"""Cluster provider backends, selected once at startup."""

from __future__ import annotations

from typing import Callable

from core.errors import ConfigError
from services.providers.base import ClusterProvider, wait_for_ready
from services.providers.mock import MockProvider

__all__ = [
    "ClusterProvider",
    "MockProvider",
    "available_providers",
    "get_provider",
    "register_provider",
    "wait_for_ready",
]


_PROVIDERS: dict[str, Callable[[], ClusterProvider]] = {
    "mock": MockProvider,
}


def register_provider(name: str, factory: Callable[[], ClusterProvider]) -> None:
    """Make a provider backend selectable by name."""

    _PROVIDERS[name] = factory


def available_providers() -> list[str]:
    return sorted(_PROVIDERS)


def get_provider(name: str) -> ClusterProvider:
    factory = _PROVIDERS.get(name)
    if factory is None:
        raise ConfigError(
            f"unknown provider {name!r}; available: {', '.join(available_providers())}"
        )
    return factory()
