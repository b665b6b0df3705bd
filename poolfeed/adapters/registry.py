# poolfeed/adapters/registry.py

"""Select adapter instances by marketplace."""

import importlib
from typing import Any

from poolfeed.adapters.base_adapter import SourceAdapter
from poolfeed.config.settings import Settings
from poolfeed.errors import UnknownSourceError
from poolfeed.models.listing import Marketplace


def source_config(marketplace: Marketplace) -> dict[str, str]:
    """Return the registry entry for *marketplace*."""
    for src in Settings.AVAILABLE_SOURCES:
        if src["id"] == marketplace.value:
            return src
    raise UnknownSourceError(f"Unregistered marketplace: {marketplace.value}")


def default_currency(marketplace: Marketplace) -> str:
    """Currency assumed when a price string carries no symbol."""
    return source_config(marketplace).get("currency", "USD")


def _load_adapter_class(dotted_path: str) -> type[Any]:
    """Dynamically import an adapter class from its dotted module path."""
    module_path, class_name = dotted_path.rsplit(".", 1)
    module = importlib.import_module(module_path)
    cls: type[Any] = getattr(module, class_name)
    return cls


def load_adapter(marketplace: Marketplace) -> SourceAdapter:
    """Instantiate the adapter registered for *marketplace*."""
    dotted = source_config(marketplace).get("adapter", "")
    if not dotted:
        raise UnknownSourceError(
            f"No adapter available for {marketplace.value}"
        )
    adapter: SourceAdapter = _load_adapter_class(dotted)()
    return adapter
