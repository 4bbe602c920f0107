"""Anthropic Messages API vision backend."""

from __future__ import annotations

from typing import Any, Dict

from bambu_lan.errors import ClassificationError
from bambu_lan.vision.base import HTTPVisionProvider, first_text

_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
_API_VERSION = "2023-06-01"


class AnthropicVisionProvider(HTTPVisionProvider):
    """Claude models via the Messages API.

    Args:
        api_key: Anthropic API key.
        model: Vision-capable model name.
        timeout: HTTP request timeout in seconds.
    """

    display_name = "Anthropic"

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "claude-sonnet-4-20250514",
        timeout: float = 60.0,
    ) -> None:
        if not api_key:
            raise ClassificationError("Anthropic requires ANTHROPIC_API_KEY", code="AUTH_REQUIRED")
        super().__init__(timeout=timeout)
        self._api_key = api_key
        self._model = model

    @property
    def name(self) -> str:
        return "anthropic"

    @property
    def model(self) -> str:
        return self._model

    def _request(self, image_b64: str, context: str) -> tuple[str, Dict[str, Any], Dict[str, str]]:
        body = {
            "model": self._model,
            "max_tokens": 100,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": "image/jpeg",
                                "data": image_b64,
                            },
                        },
                        {"type": "text", "text": context},
                    ],
                }
            ],
        }
        headers = {"x-api-key": self._api_key, "anthropic-version": _API_VERSION}
        return _MESSAGES_URL, body, headers

    def _extract_reply(self, data: Dict[str, Any]) -> str:
        for block in data.get("content") or []:
            if isinstance(block, dict) and block.get("type") == "text":
                return first_text(block.get("text"))
        return ""
