"""Select and build the configured vision backend."""

from __future__ import annotations

import logging
from typing import Callable, Dict

from bambu_lan.config import VisionSettings
from bambu_lan.errors import ClassificationError
from bambu_lan.vision.anthropic import AnthropicVisionProvider
from bambu_lan.vision.base import VisionProvider
from bambu_lan.vision.openai import AzureOpenAIVisionProvider, OpenAIVisionProvider

logger = logging.getLogger(__name__)


def _azure(settings: VisionSettings) -> VisionProvider:
    return AzureOpenAIVisionProvider(
        settings.azure_endpoint,
        settings.azure_api_key,
        deployment=settings.azure_deployment,
        api_version=settings.azure_api_version,
        timeout=settings.timeout,
    )


def _openai(settings: VisionSettings) -> VisionProvider:
    return OpenAIVisionProvider(
        settings.openai_api_key,
        model=settings.openai_model,
        timeout=settings.timeout,
    )


def _anthropic(settings: VisionSettings) -> VisionProvider:
    return AnthropicVisionProvider(
        settings.anthropic_api_key,
        model=settings.anthropic_model,
        timeout=settings.timeout,
    )


_FACTORIES: Dict[str, Callable[[VisionSettings], VisionProvider]] = {
    "azure_openai": _azure,
    "azure": _azure,
    "openai": _openai,
    "anthropic": _anthropic,
}

_NOT_CONFIGURED = (
    "No vision provider configured. Set one of:\n"
    "  AZURE_OPENAI_API_KEY + AZURE_OPENAI_ENDPOINT (Azure OpenAI)\n"
    "  OPENAI_API_KEY (OpenAI)\n"
    "  ANTHROPIC_API_KEY (Anthropic)\n"
    "Or set VISION_PROVIDER=azure_openai|openai|anthropic"
)


def create_vision_provider(settings: VisionSettings) -> VisionProvider:
    """Build the backend named by ``settings.provider``.

    With no explicit name, the first backend with credentials wins, in
    the order Azure OpenAI, OpenAI, Anthropic.

    Raises:
        ClassificationError: For an unknown provider name, missing
            credentials, or when no backend is configured at all.
    """
    if settings.provider:
        factory = _FACTORIES.get(settings.provider)
        if factory is None:
            raise ClassificationError(
                f"Unknown vision provider {settings.provider!r}. "
                "Use: azure_openai, openai, or anthropic",
                code="UNKNOWN_PROVIDER",
            )
        provider = factory(settings)
    elif settings.azure_api_key and settings.azure_endpoint:
        provider = _azure(settings)
    elif settings.openai_api_key:
        provider = _openai(settings)
    elif settings.anthropic_api_key:
        provider = _anthropic(settings)
    else:
        raise ClassificationError(_NOT_CONFIGURED, code="NOT_CONFIGURED")

    logger.info("Using vision provider %s/%s", provider.name, provider.model)
    return provider
