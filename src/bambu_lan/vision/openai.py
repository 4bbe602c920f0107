"""OpenAI and Azure OpenAI chat-completions vision backends."""

from __future__ import annotations

from typing import Any, Dict

from bambu_lan.errors import ClassificationError
from bambu_lan.vision.base import HTTPVisionProvider, first_text

_OPENAI_URL = "https://api.openai.com/v1/chat/completions"
_MAX_TOKENS = 100


def _chat_messages(image_b64: str, context: str) -> list[Dict[str, Any]]:
    return [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": context},
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:image/jpeg;base64,{image_b64}"},
                },
            ],
        }
    ]


def _chat_reply(data: Dict[str, Any]) -> str:
    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message") or {}
    return first_text(message.get("content"))


class OpenAIVisionProvider(HTTPVisionProvider):
    """OpenAI chat completions with an inline base64 image.

    Args:
        api_key: OpenAI API key.
        model: Vision-capable chat model.
        timeout: HTTP request timeout in seconds.
    """

    display_name = "OpenAI"

    def __init__(self, api_key: str, *, model: str = "gpt-4o", timeout: float = 60.0) -> None:
        if not api_key:
            raise ClassificationError("OpenAI requires OPENAI_API_KEY", code="AUTH_REQUIRED")
        super().__init__(timeout=timeout)
        self._api_key = api_key
        self._model = model

    @property
    def name(self) -> str:
        return "openai"

    @property
    def model(self) -> str:
        return self._model

    def _request(self, image_b64: str, context: str) -> tuple[str, Dict[str, Any], Dict[str, str]]:
        body = {
            "model": self._model,
            "messages": _chat_messages(image_b64, context),
            "max_tokens": _MAX_TOKENS,
        }
        return _OPENAI_URL, body, {"Authorization": f"Bearer {self._api_key}"}

    def _extract_reply(self, data: Dict[str, Any]) -> str:
        return _chat_reply(data)


class AzureOpenAIVisionProvider(HTTPVisionProvider):
    """Azure OpenAI deployment of a vision-capable chat model.

    Args:
        endpoint: Resource endpoint, e.g. ``https://my-res.openai.azure.com``.
        api_key: Azure OpenAI key.
        deployment: Deployment name; also reported as the model.
        api_version: REST API version.
    """

    display_name = "Azure OpenAI"

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        *,
        deployment: str = "gpt-4.1-mini",
        api_version: str = "2025-01-01-preview",
        timeout: float = 60.0,
    ) -> None:
        if not endpoint or not api_key:
            raise ClassificationError(
                "Azure OpenAI requires AZURE_OPENAI_ENDPOINT and AZURE_OPENAI_API_KEY",
                code="AUTH_REQUIRED",
            )
        super().__init__(timeout=timeout)
        self._endpoint = endpoint.rstrip("/")
        self._api_key = api_key
        self._deployment = deployment
        self._api_version = api_version

    @property
    def name(self) -> str:
        return "azure_openai"

    @property
    def model(self) -> str:
        return self._deployment

    def _request(self, image_b64: str, context: str) -> tuple[str, Dict[str, Any], Dict[str, str]]:
        url = (
            f"{self._endpoint}/openai/deployments/{self._deployment}"
            f"/chat/completions?api-version={self._api_version}"
        )
        body = {
            "messages": _chat_messages(image_b64, context),
            "max_tokens": _MAX_TOKENS,
        }
        return url, body, {"api-key": self._api_key}

    def _extract_reply(self, data: Dict[str, Any]) -> str:
        return _chat_reply(data)
