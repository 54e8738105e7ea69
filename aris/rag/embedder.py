"""
RAG Embedder
============

Generates embeddings using OpenAI text-embedding-3-small.
1536 dimensions, optimized for cost/latency.

Transient API failures (rate limits, timeouts, 5xx) are retried with
exponential backoff; anything else propagates.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

import openai

from ..data.config import OpenAIConfig

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingResult:
    """Result of embedding generation."""
    embedding: List[float]
    token_count: int
    model: str


class RAGEmbedder:
    """
    Generates embeddings using OpenAI text-embedding-3-small.

    Cost: ~$0.00002 per 1K tokens
    Dimensions: 1536
    Max tokens: 8191
    """

    MODEL = "text-embedding-3-small"
    DIMENSIONS = 1536
    MAX_TOKENS = 8191

    RETRYABLE_ERRORS = (
        openai.RateLimitError,
        openai.APITimeoutError,
        openai.APIConnectionError,
        openai.InternalServerError,
    )

    def __init__(
        self,
        api_key: Optional[str] = None,
        config: Optional[OpenAIConfig] = None,
        client: Optional[openai.AsyncOpenAI] = None,
        retry_base_delay: float = 1.0,
    ):
        config = config or OpenAIConfig()
        self.api_key = api_key or config.api_key
        if not self.api_key and client is None:
            raise ValueError("OpenAI API key required for embeddings")

        self.model = config.embedding_model or self.MODEL
        self.dimensions = config.embedding_dimensions or self.DIMENSIONS
        self.max_retries = config.embedding_max_retries
        self.retry_base_delay = retry_base_delay

        self._client = client
        self._total_tokens = 0
        self._total_requests = 0

    @property
    def client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            self._client = openai.AsyncOpenAI(api_key=self.api_key)
        return self._client

    async def _create(self, inputs):
        attempt = 0
        while True:
            try:
                return await self.client.embeddings.create(
                    model=self.model,
                    input=inputs,
                    dimensions=self.dimensions,
                )
            except self.RETRYABLE_ERRORS as e:
                attempt += 1
                if attempt > self.max_retries:
                    raise
                delay = self.retry_base_delay * (2 ** (attempt - 1))
                logger.warning(f"Embedding request failed ({e}); retry {attempt}/{self.max_retries} in {delay:.1f}s")
                await asyncio.sleep(delay)

    async def embed(self, text: str) -> EmbeddingResult:
        """
        Generate embedding for a single text.

        Raises:
            ValueError: if text is empty
        """
        if not text.strip():
            raise ValueError("Cannot embed empty text")

        response = await self._create(text)

        token_count = response.usage.total_tokens
        self._total_tokens += token_count
        self._total_requests += 1

        logger.debug(f"Embedded {token_count} tokens")

        return EmbeddingResult(
            embedding=response.data[0].embedding,
            token_count=token_count,
            model=self.model,
        )

    async def embed_batch(self, texts: List[str], batch_size: int = 100) -> List[EmbeddingResult]:
        """
        Generate embeddings for multiple texts, preserving order.

        Raises:
            ValueError: if any text is empty
        """
        if any(not t.strip() for t in texts):
            raise ValueError("Cannot embed empty text")

        results: List[EmbeddingResult] = []

        for i in range(0, len(texts), batch_size):
            batch = texts[i:i + batch_size]
            response = await self._create(batch)

            ordered = sorted(response.data, key=lambda d: d.index)
            per_text = response.usage.total_tokens // len(batch)  # Approx per text
            for data in ordered:
                results.append(EmbeddingResult(
                    embedding=data.embedding,
                    token_count=per_text,
                    model=self.model,
                ))

            self._total_tokens += response.usage.total_tokens
            self._total_requests += 1

            logger.debug(f"Embedded batch of {len(batch)} texts ({response.usage.total_tokens} tokens)")

        return results

    async def embed_query(self, query: str) -> List[float]:
        """Embed a search query and return just the vector."""
        result = await self.embed(query)
        return result.embedding

    @property
    def total_tokens(self) -> int:
        return self._total_tokens

    @property
    def total_requests(self) -> int:
        return self._total_requests

    @property
    def estimated_cost(self) -> float:
        """Estimated cost in USD."""
        return (self._total_tokens / 1000) * 0.00002
