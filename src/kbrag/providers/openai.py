"""
OpenAI LLM Provider.
"""

import base64
from typing import Any

from kbrag.providers.base import LLMProvider, LLMResponse


class OpenAIProvider(LLMProvider):
    """
    LLM Provider for the OpenAI chat completions API.

    Images are sent inline as base64 data URLs.
    """

    default_model = "gpt-4o-mini"
    vision_model = "gpt-4o"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        max_retries: int = 2,
    ):
        """
        Initialize the OpenAI provider.

        Args:
            api_key: API key (OPENAI_API_KEY if None)
            base_url: Optional API base URL for compatible servers
            timeout: Request timeout in seconds (SDK default if None)
            max_retries: Retries performed by the SDK client
        """
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.max_retries = max_retries
        self._client = None

    def _get_client(self):
        """Get or create OpenAI client."""
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError:
                raise ImportError(
                    "openai package not installed. "
                    "Install with: pip install openai"
                )

            kwargs: dict[str, Any] = {"max_retries": self.max_retries}
            if self.api_key:
                kwargs["api_key"] = self.api_key
            if self.base_url:
                kwargs["base_url"] = self.base_url
            if self.timeout is not None:
                kwargs["timeout"] = self.timeout

            self._client = AsyncOpenAI(**kwargs)
        return self._client

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        **kwargs: Any
    ) -> LLMResponse:
        """Get a completion from OpenAI."""
        client = self._get_client()

        params: dict[str, Any] = {
            "model": model or self.default_model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        params.update(kwargs)

        response = await client.chat.completions.create(**params)

        choice = response.choices[0]
        usage = response.usage
        return LLMResponse(
            content=choice.message.content,
            usage={
                "prompt_tokens": usage.prompt_tokens,
                "completion_tokens": usage.completion_tokens,
            } if usage else {},
            finish_reason=choice.finish_reason or "stop",
        )

    def image_message(self, data: bytes, mime_type: str, prompt: str) -> dict[str, Any]:
        encoded = base64.b64encode(data).decode("ascii")
        return {
            "role": "user",
            "content": [
                {"type": "text", "text": prompt},
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{mime_type};base64,{encoded}"},
                },
            ],
        }
