"""Storage Provider Registry — resolves an API name to its adapter.

Usage::

    from objloadtest.providers import create_provider

    provider = create_provider(config)         # uses config.api
    provider.capabilities.multipart_supported  # True for s3
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from objloadtest.providers.base import (
    ProviderCapabilities,
    StorageProvider,
    TransferTarget,
)

if TYPE_CHECKING:
    from objloadtest.config import RunConfig

__all__ = [
    "ProviderCapabilities",
    "StorageProvider",
    "TransferTarget",
    "create_provider",
    "get_provider_class",
]

_PROVIDER_CACHE: dict[str, type[StorageProvider]] = {}


def get_provider_class(api: str) -> type[StorageProvider]:
    """Resolve an API name to its provider class (cached).

    Args:
        api: Provider identifier, e.g. ``s3``.

    Returns:
        The provider class.

    Raises:
        ValueError: If the API name is not recognized.
    """
    name = api.strip().lower()
    if name in _PROVIDER_CACHE:
        return _PROVIDER_CACHE[name]

    from objloadtest.providers.s3 import S3Provider

    mapping: dict[str, type[StorageProvider]] = {
        "s3": S3Provider,
        "aws": S3Provider,
    }

    cls = mapping.get(name)
    if cls is None:
        available = ", ".join(mapping.keys())
        raise ValueError(
            f"Unknown storage API '{name}'. "
            f"Available: {available}"
        )

    _PROVIDER_CACHE[name] = cls
    return cls


def create_provider(config: RunConfig) -> StorageProvider:
    """Instantiate the provider selected by ``config.api``."""
    return get_provider_class(config.api)(config)
