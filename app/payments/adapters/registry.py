"""
Provider registry: provider name -> adapter class.

The registry is the single indirection point used by checkout, webhook
routing and reconciliation. Adding a gateway means writing an adapter class
and decorating it with @register_adapter; no call site changes.

Usage:
    from payments.adapters.registry import get_adapter, get_adapter_for_event

    adapter = get_adapter_for_event(event)
    adapter = get_adapter(ProviderConfig(provider="stub"), event=event)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from payments.adapters.base import PaymentProviderAdapter, ProviderConfig
from payments.exceptions import ConfigurationError

if TYPE_CHECKING:
    from events.models import Event

ADAPTERS: dict[str, type[PaymentProviderAdapter]] = {}


def register_adapter(
    adapter_class: type[PaymentProviderAdapter],
) -> type[PaymentProviderAdapter]:
    """Class decorator adding an adapter to the registry under its name."""
    if not adapter_class.name:
        raise ValueError(f"{adapter_class.__name__} must define a provider name")
    ADAPTERS[adapter_class.name] = adapter_class
    return adapter_class


def get_adapter_class(provider: str) -> type[PaymentProviderAdapter]:
    try:
        return ADAPTERS[provider]
    except KeyError:
        raise ConfigurationError(
            f"Unknown payment provider '{provider}'",
            provider=provider,
            details={"available": list_providers()},
        ) from None


def get_adapter(config: ProviderConfig, event: Event | None = None) -> PaymentProviderAdapter:
    """
    Construct the adapter for a configuration.

    Raises:
        ConfigurationError: Unknown provider or missing credentials
    """
    return get_adapter_class(config.provider)(config, event=event)


def get_adapter_for_event(event: Event) -> PaymentProviderAdapter:
    return get_adapter(ProviderConfig.from_event(event), event=event)


def list_providers() -> list[str]:
    return sorted(ADAPTERS)
