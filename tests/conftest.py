"""
Test configuration and fixtures.
"""

import asyncio
import re
from typing import Any, Callable

import pytest

from kbrag.providers.base import LLMProvider, LLMResponse
from kbrag.rag import (
    BaseEmbedding,
    BaseSummarizer,
    Embedder,
    MemoryBlobStore,
    MemoryKnowledgeStore,
    SQLiteKnowledgeStore,
)


class BagOfWordsEmbedding(BaseEmbedding):
    """Term-count vectors over a vocabulary grown as words are seen.

    Texts sharing words are similar; words only share a component once the
    vocabulary outgrows the dimension.
    """

    def __init__(self, dimension: int = 256):
        self._dimension = dimension
        self._vocabulary: dict[str, int] = {}
        self.calls = 0

    @property
    def dimension(self) -> int:
        return self._dimension

    def _vector(self, text: str) -> list[float]:
        vector = [0.0] * self._dimension
        for token in re.findall(r"\w+", text.lower()):
            index = self._vocabulary.setdefault(token, len(self._vocabulary) % self._dimension)
            vector[index] += 1.0
        return vector

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._vector(text) for text in texts]

    async def embed_query(self, text: str) -> list[float]:
        self.calls += 1
        return self._vector(text)


class FailingEmbedding(BagOfWordsEmbedding):
    """Embedding that fails on one specific call (1-based)."""

    def __init__(self, fail_on_call: int, dimension: int = 256):
        super().__init__(dimension)
        self.fail_on_call = fail_on_call

    async def embed_query(self, text: str) -> list[float]:
        if self.calls + 1 == self.fail_on_call:
            self.calls += 1
            raise RuntimeError("embedding service unavailable")
        return await super().embed_query(text)


class FailingSummarizer(BaseSummarizer):
    """Summarizer whose every call fails."""

    def __init__(self):
        self.calls = 0

    async def generate(self, prompt: str) -> str:
        self.calls += 1
        raise RuntimeError("model overloaded")


class PositionSummarizer(BaseSummarizer):
    """Summarizer that names the chunk position and finishes out of order."""

    async def generate(self, prompt: str) -> str:
        match = re.search(r"Chunk position: (\d+) of (\d+)", prompt)
        if match is None:
            return "Document overview."
        position, total = int(match.group(1)), int(match.group(2))
        # Later chunks finish first
        await asyncio.sleep(0.001 * (total - position))
        return f"Context {position}"


class ScriptedLLMProvider(LLMProvider):
    """LLM provider answering every prompt through a callback."""

    def __init__(self, respond: Callable[[str], str | None]):
        self.respond = respond
        self.prompts: list[str] = []

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        **kwargs: Any
    ) -> LLMResponse:
        prompt = messages[-1]["content"]
        self.prompts.append(prompt)
        return LLMResponse(content=self.respond(prompt))

    def image_message(self, data: bytes, mime_type: str, prompt: str) -> dict[str, Any]:
        return {"role": "user", "content": prompt}


def paragraphs(count: int, length: int) -> str:
    """Build ``count`` distinct paragraphs of exactly ``length`` characters."""
    result = []
    for i in range(count):
        words = " ".join(f"p{i}w{j}" for j in range(length))
        result.append(words[:length].rstrip().ljust(length, "x"))
    return "\n\n".join(result)


@pytest.fixture
def memory_store():
    """In-memory knowledge store."""
    return MemoryKnowledgeStore()


@pytest.fixture
def sqlite_store(tmp_path):
    """SQLite knowledge store in a temporary directory."""
    return SQLiteKnowledgeStore(str(tmp_path / "kb.db"))


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Each knowledge store implementation."""
    if request.param == "memory":
        return MemoryKnowledgeStore()
    return SQLiteKnowledgeStore(str(tmp_path / "kb.db"))


@pytest.fixture
def blobs():
    """In-memory blob store."""
    return MemoryBlobStore()


@pytest.fixture
def embedder():
    """Bag-of-words embedder without rate limiting."""
    return Embedder(BagOfWordsEmbedding(), request_delay=0)
