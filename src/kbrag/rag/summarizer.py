"""Summarizers used by contextual chunking."""

import logging
from typing import TYPE_CHECKING, Optional

from .base import BaseSummarizer
from .exceptions import ContextGenerationError

if TYPE_CHECKING:
    from kbrag.providers.base import LLMProvider

logger = logging.getLogger(__name__)


class LLMSummarizer(BaseSummarizer):
    """Summarizer backed by an LLM provider.

    Uses a low temperature and a small token budget, since summaries are
    one to three sentences.
    """

    def __init__(
        self,
        llm_provider: "LLMProvider",
        model: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 200,
    ):
        """Initialize the LLM summarizer.

        Args:
            llm_provider: LLM provider for generation
            model: Model to use (provider default if None)
            temperature: Sampling temperature
            max_tokens: Maximum tokens per summary
        """
        self.llm_provider = llm_provider
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def generate(self, prompt: str) -> str:
        text = await self.llm_provider.generate(
            prompt,
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        if not text:
            raise ContextGenerationError("empty response")
        return text


class FakeSummarizer(BaseSummarizer):
    """Summarizer returning a fixed text, for tests and offline ingestion.

    Every prompt it receives is recorded in ``prompts``.
    """

    def __init__(self, text: str = "Summary of the surrounding document."):
        self.text = text
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return self.text
