"""
AI Provider Factory

Maps a provider name from the configuration onto the adapter that speaks
its wire protocol. Groq shares the OpenAI adapter.
"""

import logging
from typing import Any, Dict, Optional, Type

from codeagent.core.ai.anthropic_provider import AnthropicProvider
from codeagent.core.ai.base import AIProviderConfig, BaseAIProvider, ProviderType
from codeagent.core.ai.gemini_provider import GeminiProvider
from codeagent.core.ai.openai_provider import OpenAIProvider
from codeagent.core.errors import ErrorKind, FatalConfigError

logger = logging.getLogger(__name__)

DEFAULT_MODELS: Dict[ProviderType, str] = {
    ProviderType.ANTHROPIC: "claude-sonnet-4-5",
    ProviderType.OPENAI: "gpt-4o-mini",
    ProviderType.GROQ: "llama-3.3-70b-versatile",
    ProviderType.GOOGLE: "gemini-2.5-flash",
}

# Order used when no provider is selected explicitly.
DETECTION_ORDER = [
    ProviderType.ANTHROPIC,
    ProviderType.OPENAI,
    ProviderType.GOOGLE,
    ProviderType.GROQ,
]


class AIProviderFactory:
    """
    Registry of adapter classes keyed by ProviderType.

    When no provider is named, the first one in DETECTION_ORDER with an
    api_key wins.
    """

    _providers: Dict[ProviderType, Type[BaseAIProvider]] = {
        ProviderType.ANTHROPIC: AnthropicProvider,
        ProviderType.OPENAI: OpenAIProvider,
        ProviderType.GROQ: OpenAIProvider,
        ProviderType.GOOGLE: GeminiProvider,
    }

    @classmethod
    def register_provider(
        cls,
        provider_type: ProviderType,
        provider_class: Type[BaseAIProvider]
    ) -> None:
        """
        Bind an adapter class to a provider type, replacing any previous one.

        Args:
            provider_type: Provider to serve
            provider_class: BaseAIProvider subclass that handles it
        """
        cls._providers[provider_type] = provider_class
        logger.info(f"Registered {provider_class.__name__} for {provider_type.value}")

    @classmethod
    def create(cls, config: AIProviderConfig) -> BaseAIProvider:
        """
        Create a provider instance.

        Args:
            config: Provider configuration

        Returns:
            Provider instance

        Raises:
            FatalConfigError: If the provider type is not registered or
                the configuration lacks credentials
        """
        provider_class = cls._providers.get(config.provider_type)
        if not provider_class:
            raise FatalConfigError(
                f"Provider type {config.provider_type.value} not registered",
                ErrorKind.INVALID_REQUEST,
            )
        return provider_class(config)

    @staticmethod
    def parse_provider_type(name: str) -> ProviderType:
        aliases = {"claude": "anthropic", "google": "gemini"}
        value = aliases.get(name.lower(), name.lower())
        try:
            return ProviderType(value)
        except ValueError:
            raise FatalConfigError(f"Unknown provider: {name}", ErrorKind.INVALID_REQUEST)

    @classmethod
    def create_from_config(
        cls,
        providers_config: Dict[str, Any],
        active_provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> BaseAIProvider:
        """
        Create provider from configuration dictionary.

        Args:
            providers_config: Mapping of provider name to its settings
            active_provider: Preferred provider name
            model: Optional model override

        Returns:
            Provider instance

        Raises:
            FatalConfigError: If no usable provider is configured
        """
        if active_provider:
            provider_type = cls.parse_provider_type(active_provider)
        else:
            provider_type = next(
                (
                    pt for pt in DETECTION_ORDER
                    if (providers_config.get(pt.value) or {}).get("api_key")
                ),
                None,
            )
            if provider_type is None:
                raise FatalConfigError(
                    "No AI provider configured. Add an api_key under providers.<name>.",
                    ErrorKind.AUTH,
                )

        section = providers_config.get(provider_type.value) or {}
        config = AIProviderConfig(
            provider_type=provider_type,
            api_key=section.get("api_key"),
            base_url=section.get("base_url"),
            default_model=model or section.get("model") or DEFAULT_MODELS[provider_type],
            temperature=section.get("temperature", 0.2),
            max_tokens=section.get("max_tokens", 8192),
            timeout=section.get("timeout", 120),
            extra_params=section.get("extra_params"),
        )
        return cls.create(config)
