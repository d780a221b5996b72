"""Provider registry: stores configured generative-text provider instances."""

from canopy.models import CapabilityFlags
from canopy.providers.base import TextGenerationProvider

_providers: dict[str, TextGenerationProvider] = {}

# Capability defaults per model. Unknown models get text-only defaults.
MODEL_CAPABILITIES: dict[str, CapabilityFlags] = {
    "claude-opus-4-6": CapabilityFlags(thinking=True, thinking_budget=4096),
    "claude-sonnet-4-5-20250929": CapabilityFlags(thinking=True),
    "claude-haiku-4-5-20251001": CapabilityFlags(),
    "gpt-4o": CapabilityFlags(),
    "gpt-4o-mini": CapabilityFlags(),
    "gpt-4o-audio-preview": CapabilityFlags(audio_output=True, documents=False),
    "o4-mini": CapabilityFlags(),
}


def get_model_capabilities(model: str) -> CapabilityFlags:
    """Default capability flags for a model. Returns a copy."""
    return MODEL_CAPABILITIES.get(model, CapabilityFlags()).model_copy()


def register_provider(provider: TextGenerationProvider) -> None:
    """Register a provider instance by name."""
    _providers[provider.name] = provider


def get_provider(name: str) -> TextGenerationProvider:
    """Get a registered provider by name. Raises ProviderNotFoundError if not found."""
    try:
        return _providers[name]
    except KeyError:
        available = ", ".join(_providers.keys()) or "(none)"
        raise ProviderNotFoundError(
            f"Provider '{name}' not registered. Available: {available}"
        )


def list_providers() -> list[str]:
    """Return names of all registered providers."""
    return list(_providers.keys())


def get_all_providers() -> list[TextGenerationProvider]:
    return list(_providers.values())


def clear_providers() -> None:
    """Clear all registered providers. Used in tests."""
    _providers.clear()


class ProviderNotFoundError(Exception):
    pass
