"""
RAG Generation
==============

Grounded answer generation: retrieve context, build one prompt, call
the LLM once (no retries, no streaming) and score confidence.
"""

import logging
import time
from typing import List, Optional

from ..ai.llm_client import LLMClient
from .context import MemoryContextManager
from .models import Citation, QueryContext, RAGResponse, RetrievalOptions
from .retriever import RAGRetriever

logger = logging.getLogger(__name__)


NO_CONTEXT_ANSWER = "I don't have enough relevant information to answer your question accurately."
ERROR_ANSWER = "I encountered an error while processing your request. Please try again."

SYSTEM_PROMPT = """You are an intelligent AI assistant for a CRM system. Use the provided context to answer questions accurately and helpfully.

Context Information:
{context}

Instructions:
- Answer based on the provided context
- If the context doesn't contain enough information, say so
- Include specific details when available
- Be concise but comprehensive
- Use a professional, helpful tone
- Reference specific sources when making claims"""

RETRIEVAL_LIMIT = 5
RETRIEVAL_THRESHOLD = 0.7
MAX_TOKENS = 500
TEMPERATURE = 0.3


def calculate_confidence(similarities: List[float], answer: str) -> float:
    """Blend of mean similarity (70%) and answer length (30%), capped at 0.95."""
    if not similarities:
        return 0.1
    avg_similarity = sum(similarities) / len(similarities)
    length_factor = min(len(answer) / 100, 1.0)
    return min(avg_similarity * 0.7 + length_factor * 0.3, 0.95)


class RAGGenerator:
    """Answers queries from a tenant's knowledge base."""

    def __init__(
        self,
        retriever: RAGRetriever,
        llm: LLMClient,
        context_manager: Optional[MemoryContextManager] = None,
    ):
        self.retriever = retriever
        self.llm = llm
        self.context_manager = context_manager

    async def query_with_generation(
        self,
        query: str,
        organization_id: str,
        context: Optional[QueryContext] = None,
        preamble: Optional[str] = None,
    ) -> RAGResponse:
        """
        Generate an answer grounded in retrieved context.

        Args:
            query: User question
            organization_id: Tenant scope
            context: Caller context (source types, memory mode)
            preamble: Text placed ahead of the retrieved context in the prompt

        Returns:
            RAGResponse; never raises for backend failures
        """
        context = context or QueryContext()
        start = time.time()

        if context.use_memory and self.context_manager is not None:
            memory_result = await self.context_manager.build_optimized_context(
                query, organization_id, context.user_id
            )
            context_text = self.context_manager.format_for_prompt(memory_result)
            similarities = [m.similarity or 0.0 for m in memory_result.memories]
            citations: List[Citation] = []
        else:
            retrieval = await self.retriever.retrieve(
                query,
                organization_id,
                RetrievalOptions(
                    source_types=context.source_types or self.retriever.determine_relevant_sources(query),
                    limit=RETRIEVAL_LIMIT,
                    similarity_threshold=RETRIEVAL_THRESHOLD,
                ),
            )
            context_text = self.retriever.format_context(retrieval.chunks)
            similarities = [c.similarity for c in retrieval.chunks]
            citations = [
                Citation(
                    source_type=c.source_type,
                    source_id=c.source_id,
                    title=c.title,
                    similarity=c.similarity,
                )
                for c in retrieval.chunks
            ]

        if not similarities:
            return RAGResponse(
                answer=NO_CONTEXT_ANSWER,
                confidence=0.1,
                processing_time_ms=int((time.time() - start) * 1000),
            )

        prompt_context = f"{preamble}\n\n{context_text}" if preamble else context_text

        try:
            response = await self.llm.generate(
                prompt=query,
                system=SYSTEM_PROMPT.format(context=prompt_context),
                max_tokens=MAX_TOKENS,
                temperature=TEMPERATURE,
            )
        except Exception as e:
            logger.error(f"[Generation] LLM call failed: {e}", extra={"organization_id": organization_id})
            return RAGResponse(
                answer=ERROR_ANSWER,
                confidence=0.0,
                processing_time_ms=int((time.time() - start) * 1000),
            )

        answer = response.content or "No response generated"
        elapsed_ms = int((time.time() - start) * 1000)
        logger.info(f"[Generation] Answered with {len(similarities)} context items in {elapsed_ms}ms")

        return RAGResponse(
            answer=answer,
            confidence=calculate_confidence(similarities, answer),
            sources=citations,
            context_used=prompt_context,
            processing_time_ms=elapsed_ms,
            tokens_used=response.total_tokens,
        )
