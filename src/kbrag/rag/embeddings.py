"""Embedding model implementations and the rate-limited embedder."""

import asyncio
import hashlib
import logging
import time
from typing import Optional

from .base import BaseEmbedding
from .exceptions import EmbeddingProviderError

logger = logging.getLogger(__name__)


def format_embedding(embedding: list[float]) -> str:
    """Serialize a vector to the store's ``[v1,v2,...]`` text form."""
    return "[" + ",".join(repr(float(v)) for v in embedding) + "]"


def parse_embedding(value: str) -> list[float]:
    """Parse a vector serialized by :func:`format_embedding`."""
    stripped = value.strip().strip("[]")
    if not stripped:
        return []
    return [float(v) for v in stripped.split(",")]


class DummyEmbedding(BaseEmbedding):
    """A dummy embedding model for testing.

    Returns zero vectors of a specified dimension.
    """

    def __init__(self, dimension: int = 384):
        self._dimension = dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [[0.0] * self._dimension for _ in texts]

    async def embed_query(self, text: str) -> list[float]:
        return [0.0] * self._dimension


class OpenAIEmbedding(BaseEmbedding):
    """OpenAI embedding model.

    Uses OpenAI's embedding API (text-embedding-3-small/large). SDK errors are
    reported as :class:`EmbeddingProviderError`.

    Note: Requires the 'openai' extra to be installed.
    """

    # Known model dimensions
    MODEL_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        batch_size: int = 100,
        dimensions: Optional[int] = None,
    ):
        """Initialize the OpenAI embedding model.

        Args:
            model: Model name (text-embedding-3-small, text-embedding-3-large)
            api_key: OpenAI API key (optional, uses env var if not provided)
            base_url: Optional base URL for API
            batch_size: Batch size for embedding documents
            dimensions: Optional reduced output dimension (text-embedding-3 models)
        """
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.batch_size = batch_size
        self.dimensions = dimensions
        self._client = None

    @property
    def dimension(self) -> int:
        if self.dimensions:
            return self.dimensions
        return self.MODEL_DIMENSIONS.get(self.model, 1536)

    def _get_client(self):
        """Get or create the OpenAI client."""
        if self._client is None:
            try:
                from openai import AsyncOpenAI
            except ImportError:
                raise ImportError(
                    "OpenAI embedding requires the 'openai' package. "
                    "Install it with: pip install openai"
                )

            kwargs = {}
            if self.api_key:
                kwargs["api_key"] = self.api_key
            if self.base_url:
                kwargs["base_url"] = self.base_url

            self._client = AsyncOpenAI(**kwargs)
        return self._client

    async def _create(self, inputs: list[str] | str) -> list[list[float]]:
        import openai

        client = self._get_client()
        params = {"model": self.model, "input": inputs}
        if self.dimensions:
            params["dimensions"] = self.dimensions

        try:
            response = await client.embeddings.create(**params)
        except openai.RateLimitError as e:
            raise EmbeddingProviderError(str(e), reason="quota_exceeded") from e
        except (openai.AuthenticationError, openai.PermissionDeniedError) as e:
            raise EmbeddingProviderError(str(e), reason="auth") from e
        except openai.BadRequestError as e:
            raise EmbeddingProviderError(str(e), reason="malformed_input") from e
        except openai.APITimeoutError as e:
            raise EmbeddingProviderError(str(e), reason="timeout") from e
        except openai.OpenAIError as e:
            raise EmbeddingProviderError(str(e), reason="unavailable") from e

        return [item.embedding for item in response.data]

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed a list of documents using OpenAI API."""
        all_embeddings = []

        # Process in batches
        for i in range(0, len(texts), self.batch_size):
            batch = texts[i : i + self.batch_size]
            all_embeddings.extend(await self._create(batch))

        return all_embeddings

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single query using OpenAI API."""
        embeddings = await self._create(text)
        return embeddings[0]


class LocalEmbedding(BaseEmbedding):
    """Local embedding model using sentence-transformers.

    Uses HuggingFace sentence-transformers models locally.
    No API calls required, runs entirely on the local machine.

    Note: Requires the 'local' extra to be installed.
    """

    # Known model dimensions
    MODEL_DIMENSIONS = {
        "all-MiniLM-L6-v2": 384,
        "all-mpnet-base-v2": 768,
        "paraphrase-multilingual-MiniLM-L12-v2": 384,
        "multi-qa-mpnet-base-dot-v1": 768,
    }

    def __init__(
        self,
        model_name: str = "all-MiniLM-L6-v2",
        device: Optional[str] = None,
        normalize: bool = True,
    ):
        """Initialize the local embedding model.

        Args:
            model_name: Name of the sentence-transformers model
            device: Device to run on (cuda, cpu, mps). Auto-detected if None.
            normalize: Whether to normalize embeddings
        """
        self.model_name = model_name
        self.device = device
        self.normalize = normalize
        self._model = None

    @property
    def dimension(self) -> int:
        if self._model is not None:
            return self._model.get_sentence_embedding_dimension()
        return self.MODEL_DIMENSIONS.get(self.model_name, 384)

    def _get_model(self):
        """Get or load the sentence-transformers model."""
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError:
                raise ImportError(
                    "Local embedding requires 'sentence-transformers'. "
                    "Install it with: pip install sentence-transformers"
                )

            self._model = SentenceTransformer(self.model_name, device=self.device)
            logger.info(f"Loaded embedding model: {self.model_name}")
        return self._model

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        """Embed a list of documents using local model."""
        model = self._get_model()

        # Run in thread pool to avoid blocking
        loop = asyncio.get_running_loop()
        try:
            embeddings = await loop.run_in_executor(
                None,
                lambda: model.encode(
                    texts,
                    normalize_embeddings=self.normalize,
                    convert_to_numpy=True,
                ),
            )
        except (RuntimeError, ValueError) as e:
            raise EmbeddingProviderError(str(e), reason="unavailable") from e

        return embeddings.tolist()

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single query using local model."""
        embeddings = await self.embed_documents([text])
        return embeddings[0]


class FakeEmbedding(BaseEmbedding):
    """Fake embedding that generates deterministic embeddings from text.

    Useful for testing when you want predictable embeddings. Each component is
    derived from a hash of the seed, the text and the component index, so the
    values spread over [-1, 1].
    """

    def __init__(self, dimension: int = 384, seed: int = 42):
        self._dimension = dimension
        self.seed = seed

    @property
    def dimension(self) -> int:
        return self._dimension

    def _hash_text(self, text: str) -> list[float]:
        embedding = []
        for i in range(self._dimension):
            digest = hashlib.sha256(f"{self.seed}:{i}:{text}".encode()).digest()
            value = int.from_bytes(digest[:4], "big") / 0xFFFFFFFF
            embedding.append(value * 2.0 - 1.0)
        return embedding

    async def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [self._hash_text(text) for text in texts]

    async def embed_query(self, text: str) -> list[float]:
        return self._hash_text(text)


class Embedder:
    """Rate-limited, timeout-bounded access to an embedding provider.

    Call start times are spaced by at least ``request_delay`` seconds so bulk
    ingestion does not trip provider throttling. Only the slot reservation is
    serialized; no lock is held while the provider call is in flight.
    """

    def __init__(
        self,
        provider: BaseEmbedding,
        request_delay: float = 0.05,
        timeout: Optional[float] = None,
    ):
        """Initialize the embedder.

        Args:
            provider: Embedding model
            request_delay: Minimum seconds between consecutive provider calls
            timeout: Seconds allowed per provider call (None for no limit)
        """
        if request_delay < 0:
            raise ValueError("request_delay must be non-negative")
        self.provider = provider
        self.request_delay = request_delay
        self.timeout = timeout
        self._slot_lock = asyncio.Lock()
        self._next_slot = 0.0

    @property
    def dimension(self) -> int:
        return self.provider.dimension

    async def _wait_for_slot(self) -> None:
        async with self._slot_lock:
            now = time.monotonic()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self.request_delay
        delay = slot - now
        if delay > 0:
            await asyncio.sleep(delay)

    async def embed(self, text: str) -> list[float]:
        """Embed one text.

        Raises:
            EmbeddingProviderError: On empty input, provider failure, timeout
                or a vector of the wrong dimension
        """
        if not text or not text.strip():
            raise EmbeddingProviderError("empty input text", reason="malformed_input")

        await self._wait_for_slot()

        try:
            if self.timeout is None:
                vector = await self.provider.embed_query(text)
            else:
                vector = await asyncio.wait_for(self.provider.embed_query(text), self.timeout)
        except asyncio.TimeoutError as e:
            raise EmbeddingProviderError(
                f"timed out after {self.timeout}s", reason="timeout"
            ) from e
        except EmbeddingProviderError:
            raise
        except Exception as e:
            raise EmbeddingProviderError(str(e) or type(e).__name__) from e

        expected = self.provider.dimension
        if not vector or len(vector) != expected:
            raise EmbeddingProviderError(
                f"Invalid embedding dimensions: expected {expected}, got {len(vector or [])}",
                reason="malformed_response",
            )
        return [float(v) for v in vector]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed texts one at a time, in order."""
        return [await self.embed(text) for text in texts]
