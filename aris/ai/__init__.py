"""
ARIS AI Module
==============

LLM clients used for grounded answer generation.
"""

from .llm_client import (
    LLMClient,
    LLMResponse,
    LLMProvider,
    AnthropicClient,
    OpenAIClient,
    get_llm_client,
)

__all__ = [
    "LLMClient",
    "LLMResponse",
    "LLMProvider",
    "AnthropicClient",
    "OpenAIClient",
    "get_llm_client",
]
