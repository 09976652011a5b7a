"""
Anthropic Claude LLM Provider.
"""

import base64
from typing import Any

from kbrag.providers.base import LLMProvider, LLMResponse


class AnthropicProvider(LLMProvider):
    """
    LLM Provider for the Anthropic messages API.

    System messages are lifted into the ``system`` parameter; every Claude 3
    model accepts image input, so no separate vision model is needed.
    """

    default_model = "claude-3-5-haiku-20241022"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        max_retries: int = 2,
    ):
        """
        Initialize the Anthropic provider.

        Args:
            api_key: API key (ANTHROPIC_API_KEY if None)
            base_url: Optional API base URL
            timeout: Request timeout in seconds (SDK default if None)
            max_retries: Retries performed by the SDK client
        """
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.max_retries = max_retries
        self._client = None

    def _get_client(self):
        """Get or create Anthropic client."""
        if self._client is None:
            try:
                from anthropic import AsyncAnthropic
            except ImportError:
                raise ImportError(
                    "anthropic package not installed. "
                    "Install with: pip install anthropic"
                )

            kwargs: dict[str, Any] = {"max_retries": self.max_retries}
            if self.api_key:
                kwargs["api_key"] = self.api_key
            if self.base_url:
                kwargs["base_url"] = self.base_url
            if self.timeout is not None:
                kwargs["timeout"] = self.timeout

            self._client = AsyncAnthropic(**kwargs)
        return self._client

    @staticmethod
    def _split_system(
        messages: list[dict[str, Any]]
    ) -> tuple[str, list[dict[str, Any]]]:
        """Return the joined system prompt and the user/assistant turns."""
        system_parts = []
        turns = []

        for msg in messages:
            role = msg.get("role", "")
            if role == "system":
                if isinstance(msg.get("content"), str):
                    system_parts.append(msg["content"])
            elif role in ("user", "assistant"):
                turns.append({"role": role, "content": msg.get("content", "")})

        return "\n".join(system_parts).strip(), turns

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        **kwargs: Any
    ) -> LLMResponse:
        """Get a completion from Anthropic."""
        client = self._get_client()

        system_prompt, turns = self._split_system(messages)

        params: dict[str, Any] = {
            "model": model or self.default_model,
            "messages": turns,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if system_prompt:
            params["system"] = system_prompt
        params.update(kwargs)

        response = await client.messages.create(**params)

        text = [block.text for block in response.content if block.type == "text"]

        return LLMResponse(
            content="\n".join(text) if text else None,
            usage={
                "prompt_tokens": response.usage.input_tokens,
                "completion_tokens": response.usage.output_tokens,
            },
            finish_reason=response.stop_reason or "stop",
        )

    def image_message(self, data: bytes, mime_type: str, prompt: str) -> dict[str, Any]:
        return {
            "role": "user",
            "content": [
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": mime_type,
                        "data": base64.b64encode(data).decode("ascii"),
                    },
                },
                {"type": "text", "text": prompt},
            ],
        }
