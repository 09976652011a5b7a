"""Reranker implementations."""

import asyncio
import logging
import math
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, field_validator

from .base import BaseRerankProvider
from .document import RetrievalResult
from .exceptions import RerankProviderError

if TYPE_CHECKING:
    from kbrag.providers.base import LLMProvider

logger = logging.getLogger(__name__)


class RerankOptions(BaseModel):
    """Options for a rerank call."""

    top_k: int = 5
    model: Optional[str] = None

    @field_validator("top_k")
    @classmethod
    def _check_top_k(cls, value: int) -> int:
        if value < 1:
            raise ValueError("top_k must be at least 1")
        return value


class CrossEncoderRerankProvider(BaseRerankProvider):
    """Relevance scoring with a cross-encoder model.

    Uses a cross-encoder model from sentence-transformers for
    accurate relevance scoring.
    """

    def __init__(
        self,
        model_name: str = "cross-encoder/ms-marco-MiniLM-L-6-v2",
        device: Optional[str] = None,
    ):
        """Initialize the cross-encoder provider.

        Args:
            model_name: Name of the cross-encoder model
            device: Device to run on (cuda, cpu, mps)
        """
        self.model_name = model_name
        self.device = device
        self._models: dict[str, object] = {}

    def _get_model(self, model_name: str):
        """Get or load a cross-encoder model."""
        if model_name not in self._models:
            try:
                from sentence_transformers import CrossEncoder
            except ImportError:
                raise ImportError(
                    "CrossEncoder requires 'sentence-transformers'. "
                    "Install it with: pip install sentence-transformers"
                )

            self._models[model_name] = CrossEncoder(model_name, device=self.device)
            logger.info(f"Loaded cross-encoder model: {model_name}")
        return self._models[model_name]

    async def score(
        self,
        query: str,
        documents: list[str],
        model: Optional[str] = None,
    ) -> list[float]:
        """Score query-document pairs with the cross-encoder."""
        if not documents:
            return []

        cross_encoder = self._get_model(model or self.model_name)
        pairs = [(query, document) for document in documents]

        # Score in thread pool
        loop = asyncio.get_running_loop()
        scores = await loop.run_in_executor(
            None,
            lambda: cross_encoder.predict(pairs),
        )

        return [float(score) for score in scores]


class LLMRerankProvider(BaseRerankProvider):
    """Relevance scoring with an LLM.

    Uses the LLM to rate the relevance of each candidate on a 0-10 scale,
    normalized to 0-1. More accurate but slower than a cross-encoder.
    """

    RERANK_PROMPT = """You are a relevance evaluator. Given a query and a document excerpt, rate how relevant the document is to the query on a scale of 0 to 10.

Query: {query}

Document: {document}

Return only a single number between 0 and 10, with no additional text."""

    def __init__(
        self,
        llm_provider: "LLMProvider",
        model: Optional[str] = None,
        batch_size: int = 5,
        max_document_chars: int = 1000,
    ):
        """Initialize the LLM rerank provider.

        Args:
            llm_provider: LLM provider for scoring
            model: Model to use for scoring (provider default if None)
            batch_size: Number of documents to score concurrently
            max_document_chars: Characters of each candidate shown to the LLM
        """
        self.llm_provider = llm_provider
        self.model = model
        self.batch_size = batch_size
        self.max_document_chars = max_document_chars

    async def score(
        self,
        query: str,
        documents: list[str],
        model: Optional[str] = None,
    ) -> list[float]:
        """Score each document with the LLM, in batches."""
        scores: list[float] = []

        for i in range(0, len(documents), self.batch_size):
            batch = documents[i:i + self.batch_size]
            tasks = [self._score_document(query, document, model or self.model) for document in batch]
            scores.extend(await asyncio.gather(*tasks))

        return scores

    async def _score_document(self, query: str, document: str, model: Optional[str]) -> float:
        prompt = self.RERANK_PROMPT.format(
            query=query,
            document=document[:self.max_document_chars],
        )

        content = await self.llm_provider.generate(
            prompt,
            model=model,
            temperature=0.1,
            max_tokens=10,
        )
        try:
            score = float(content.split()[0])
        except (IndexError, ValueError):
            raise RerankProviderError(f"unparseable relevance score: {content!r}")

        return max(0.0, min(10.0, score)) / 10.0


class Reranker:
    """Optional reranking stage with graceful degradation.

    Without a provider, or when the provider fails, the input order is kept
    and only truncated.
    """

    def __init__(
        self,
        provider: Optional[BaseRerankProvider] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize the reranker.

        Args:
            provider: Relevance scoring provider (reranking disabled if None)
            timeout: Seconds allowed per scoring call (None for no limit)
        """
        self.provider = provider
        self.timeout = timeout

    @property
    def is_available(self) -> bool:
        return self.provider is not None

    async def rerank(
        self,
        query: str,
        results: list[RetrievalResult],
        options: Optional[RerankOptions] = None,
    ) -> list[RetrievalResult]:
        """Reorder results by provider relevance score.

        Args:
            query: Original query string
            results: Candidates, best first
            options: Rerank options

        Returns:
            At most ``top_k`` results; the input order when reranking is
            unavailable or fails
        """
        options = options or RerankOptions()

        if self.provider is None:
            logger.debug("No rerank provider configured, skipping reranking")
            return results[:options.top_k]

        if not results:
            return []

        try:
            scores = await self._score(query, results, options.model)
        except RerankProviderError as e:
            logger.warning(f"{e}; using original order")
            return results[:options.top_k]

        scored = [
            result.model_copy(update={"score": score})
            for result, score in zip(results, scores)
        ]
        # Stable sort keeps the input order among equal scores
        scored.sort(key=lambda r: r.score, reverse=True)

        return scored[:options.top_k]

    async def _score(
        self,
        query: str,
        results: list[RetrievalResult],
        model: Optional[str],
    ) -> list[float]:
        documents = [r.contextual_content for r in results]

        try:
            call = self.provider.score(query, documents, model)
            if self.timeout is None:
                scores = await call
            else:
                scores = await asyncio.wait_for(call, self.timeout)
        except asyncio.TimeoutError as e:
            raise RerankProviderError(f"timed out after {self.timeout}s") from e
        except RerankProviderError:
            raise
        except Exception as e:
            raise RerankProviderError(str(e) or type(e).__name__) from e

        if len(scores) != len(results):
            raise RerankProviderError(
                f"expected {len(results)} scores, got {len(scores)}"
            )

        values = []
        for score in scores:
            try:
                value = float(score)
            except (TypeError, ValueError):
                raise RerankProviderError(f"invalid score: {score!r}")
            if math.isnan(value):
                raise RerankProviderError("invalid score: nan")
            values.append(value)

        return values

    async def rerank_with_fallback(
        self,
        query: str,
        results: list[RetrievalResult],
        options: Optional[RerankOptions] = None,
    ) -> list[RetrievalResult]:
        """Rerank, falling back to the truncated input on any failure."""
        options = options or RerankOptions()
        try:
            return await self.rerank(query, results, options)
        except Exception as e:
            logger.error(f"Reranking failed, using original results: {e}")
            return results[:options.top_k]
