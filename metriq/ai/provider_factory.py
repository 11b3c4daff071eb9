"""METRIQ — Provider Selection."""

from typing import Dict, Tuple, Type

from metriq.ai.base_provider import CodeGenerationProvider
from metriq.ai.claude_provider import ClaudeProvider
from metriq.ai.sarvam_provider import SarvamProvider
from metriq.config import settings
from metriq.core.errors import SynthesisFailure

PROVIDERS: Dict[str, Type[CodeGenerationProvider]] = {
    "claude": ClaudeProvider,
    "sarvam": SarvamProvider,
}


def select_provider(provider_name: str = "auto") -> Tuple[str, CodeGenerationProvider]:
    """Select and return an available code-generation provider.

    When provider_name is 'auto', tries DEFAULT_AI_PROVIDER first,
    then falls through remaining providers.
    """
    if provider_name == "auto":
        default = settings.default_ai_provider
        if default in PROVIDERS:
            p = PROVIDERS[default]()
            if p.is_available():
                return default, p
        for name, cls in PROVIDERS.items():
            if name == default:
                continue  # already tried
            provider = cls()
            if provider.is_available():
                return name, provider
        raise SynthesisFailure(
            "No code-generation provider configured. Set ANTHROPIC_API_KEY or SARVAM_API_KEY in .env."
        )

    if provider_name not in PROVIDERS:
        raise SynthesisFailure(f"Unknown provider: {provider_name}.")
    provider = PROVIDERS[provider_name]()
    if not provider.is_available():
        raise SynthesisFailure(f"{provider_name} provider not configured.")
    return provider_name, provider
