"""
Base LLM Provider interface.
"""

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel


class LLMResponse(BaseModel):
    """Response from an LLM."""
    content: str | None = None
    usage: dict[str, int] = {}
    finish_reason: str = "stop"


class LLMProvider(ABC):
    """
    Abstract base class for LLM providers.

    The knowledge base only needs short text completions (contextual
    summaries, relevance ratings) and image descriptions.
    """

    default_model: str = ""
    vision_model: str | None = None

    @abstractmethod
    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        **kwargs: Any
    ) -> LLMResponse:
        """
        Get a completion from the LLM.

        Args:
            messages: List of messages in API format
            model: Model identifier (provider default if None)
            temperature: Sampling temperature
            max_tokens: Maximum tokens to generate
            **kwargs: Additional provider-specific options

        Returns:
            LLMResponse with the generated text
        """
        pass

    async def generate(
        self,
        prompt: str,
        *,
        model: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 200,
    ) -> str:
        """Complete a single user prompt and return its stripped text."""
        response = await self.complete(
            [{"role": "user", "content": prompt}],
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        return (response.content or "").strip()

    @abstractmethod
    def image_message(self, data: bytes, mime_type: str, prompt: str) -> dict[str, Any]:
        """Build a user message carrying an image and a text prompt."""
        pass

    async def describe_image(
        self,
        data: bytes,
        mime_type: str,
        prompt: str,
        *,
        model: str | None = None,
        max_tokens: int = 2048,
    ) -> str:
        """
        Describe an image with a vision-capable model.

        Args:
            data: Raw image bytes
            mime_type: Image MIME type
            prompt: Instructions for the description
            model: Model identifier (vision or default model if None)
            max_tokens: Maximum tokens to generate

        Returns:
            The description text (empty if the model returned none)
        """
        response = await self.complete(
            [self.image_message(data, mime_type, prompt)],
            model=model or self.vision_model,
            temperature=0.2,
            max_tokens=max_tokens,
        )
        return (response.content or "").strip()
