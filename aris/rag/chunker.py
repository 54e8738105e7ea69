"""
Document Chunker
================

Splits text into bounded, overlapping chunks for embedding.

Rules:
- Target chunk size 1000 tokens, hard bounds 100-1500 (products: 500)
- Recursive splitting, coarsest separator first
- Separators stay attached to the text on their left, so the chunks'
  core contents rebuild the original word sequence
- Neighbouring boundary text is copied into each chunk behind a "..."
  marker, never pushing a chunk past the maximum size
- Stable chunking (same input = same chunks)
"""

import logging
import math
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from .models import DocumentChunk

logger = logging.getLogger(__name__)


# Characters per token. Chunk sizing uses the tighter ratio; context-window
# budgeting in the memory context manager uses the looser one.
CHUNKER_CHARS_PER_TOKEN = 3.5
CONTEXT_CHARS_PER_TOKEN = 4.0

# Approximate words per token when sizing overlap slices
WORDS_PER_TOKEN = 0.75

OVERLAP_MARKER = "\n...\n"

DEFAULT_SEPARATORS = ["\n\n", "\n", ". ", "! ", "? ", "; ", ", ", " "]


def estimate_tokens(text: str, chars_per_token: float = CHUNKER_CHARS_PER_TOKEN) -> int:
    """Heuristic token count: ceil(len / chars_per_token). Not a tokenizer."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


class ChunkingError(ValueError):
    """Content cannot be chunked."""
    pass


@dataclass
class ChunkingConfig:
    """Chunking configuration, in estimated tokens."""
    chunk_size: int = 1000
    chunk_overlap: int = 200
    min_chunk_size: int = 100
    max_chunk_size: int = 1500
    separators: List[str] = field(default_factory=lambda: list(DEFAULT_SEPARATORS))

    def __post_init__(self):
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if self.chunk_overlap < 0:
            raise ValueError("chunk_overlap cannot be negative")
        if self.min_chunk_size > self.max_chunk_size:
            raise ValueError("min_chunk_size cannot exceed max_chunk_size")
        if self.chunk_size > self.max_chunk_size:
            raise ValueError("chunk_size cannot exceed max_chunk_size")

    @classmethod
    def for_products(cls) -> "ChunkingConfig":
        """Smaller chunks for structured product records."""
        return cls(chunk_size=500, chunk_overlap=100)

    def with_overrides(
        self,
        chunk_size: Optional[int] = None,
        chunk_overlap: Optional[int] = None,
    ) -> "ChunkingConfig":
        changes: Dict[str, Any] = {}
        if chunk_size is not None:
            changes["chunk_size"] = chunk_size
        if chunk_overlap is not None:
            changes["chunk_overlap"] = chunk_overlap
        return replace(self, **changes) if changes else self

    @property
    def max_chars(self) -> int:
        """Longest text whose estimate stays within max_chunk_size."""
        return int(self.max_chunk_size * CHUNKER_CHARS_PER_TOKEN)


class DocumentChunker:
    """
    Splits content into overlapping chunks.

    Each returned chunk carries its pre-overlap text in `core_content`;
    `content` is what gets embedded.
    """

    def __init__(self, config: Optional[ChunkingConfig] = None):
        self.config = config or ChunkingConfig()

    def chunk(self, content: str, config: Optional[ChunkingConfig] = None) -> List[DocumentChunk]:
        """
        Split content into chunks.

        Raises:
            ChunkingError: if content is empty or whitespace-only
        """
        config = config or self.config

        if content is None or not content.strip():
            raise ChunkingError("Cannot chunk empty content")

        text = self._preprocess(content)
        pieces = self._split_into_chunks(text, config)
        chunks = self._add_overlap_and_metadata(pieces, config)
        valid = self._validate_chunks(chunks, config)

        if valid:
            avg = round(sum(c.token_count for c in valid) / len(valid))
            logger.debug(f"Chunked content into {len(valid)} chunks (avg {avg} tokens)")
        return valid

    def chunk_with_metadata(
        self,
        content: str,
        metadata: Dict[str, Any],
        config: Optional[ChunkingConfig] = None,
    ) -> List[DocumentChunk]:
        """Chunk and merge caller metadata into every chunk (chunk-local keys win)."""
        chunks = self.chunk(content, config)
        for chunk in chunks:
            chunk.metadata = {**metadata, **chunk.metadata}
        return chunks

    def chunk_product_data(
        self,
        product: Dict[str, Any],
        config: Optional[ChunkingConfig] = None,
    ) -> List[DocumentChunk]:
        """Format a structured product record into sections, then chunk it."""
        content = self.format_product_content(product)
        return self.chunk(content, config or ChunkingConfig.for_products())

    @staticmethod
    def format_product_content(product: Dict[str, Any]) -> str:
        sections = [f"Product: {product.get('name', '')}"]

        if product.get("sku"):
            sections.append(f"SKU: {product['sku']}")
        if product.get("category"):
            sections.append(f"Category: {product['category']}")
        if product.get("description"):
            sections.append(f"Description: {product['description']}")

        for label, key in (("Specifications", "specifications"), ("Attributes", "attributes")):
            values = product.get(key)
            if values:
                lines = "\n".join(f"{k}: {v}" for k, v in values.items())
                sections.append(f"{label}:\n{lines}")

        return "\n\n".join(sections)

    def get_chunking_stats(self, chunks: List[DocumentChunk]) -> Dict[str, int]:
        if not chunks:
            return {
                "total_chunks": 0,
                "average_tokens": 0,
                "min_tokens": 0,
                "max_tokens": 0,
                "total_tokens": 0,
                "average_overlap": 0,
            }

        token_counts = [c.token_count for c in chunks]
        overlaps = [c.overlap_with_previous + c.overlap_with_next for c in chunks]
        return {
            "total_chunks": len(chunks),
            "average_tokens": round(sum(token_counts) / len(chunks)),
            "min_tokens": min(token_counts),
            "max_tokens": max(token_counts),
            "total_tokens": sum(token_counts),
            "average_overlap": round(sum(overlaps) / len(chunks)),
        }

    # =========================================================================
    # SPLITTING
    # =========================================================================

    @staticmethod
    def _preprocess(content: str) -> str:
        text = content.replace("\r\n", "\n").replace("\r", "\n")
        text = re.sub(r"[ \t]+", " ", text)
        text = re.sub(r"\n{3,}", "\n\n", text)
        return text.strip()

    def _split_into_chunks(self, text: str, config: ChunkingConfig) -> List[str]:
        if estimate_tokens(text) <= config.chunk_size:
            return [text]

        pieces = [p.strip() for p in self._recursive_split(text, list(config.separators), config)]
        pieces = [p for p in pieces if p]
        return self._merge_small_pieces(pieces, config)

    def _recursive_split(self, text: str, separators: List[str], config: ChunkingConfig) -> List[str]:
        if estimate_tokens(text) <= config.max_chunk_size:
            return [text]
        if not separators:
            return self._hard_split(text, config)

        separator = separators[0]
        parts = text.split(separator)
        if len(parts) == 1:
            return self._recursive_split(text, separators[1:], config)

        # Keep each separator on the part to its left
        parts = [p + separator for p in parts[:-1]] + [parts[-1]]

        chunks: List[str] = []
        current = ""
        for part in parts:
            if not part:
                continue
            candidate = current + part
            if estimate_tokens(candidate) <= config.chunk_size:
                current = candidate
                continue

            if current:
                chunks.append(current)
            if estimate_tokens(part) > config.chunk_size:
                chunks.extend(self._recursive_split(part, separators[1:], config))
                current = ""
            else:
                current = part

        if current:
            chunks.append(current)
        return chunks

    @staticmethod
    def _hard_split(text: str, config: ChunkingConfig) -> List[str]:
        """Last resort for text with no separators left: fixed character windows."""
        width = int(config.chunk_size * CHUNKER_CHARS_PER_TOKEN)
        return [text[i:i + width] for i in range(0, len(text), width)]

    @staticmethod
    def _merge_small_pieces(pieces: List[str], config: ChunkingConfig) -> List[str]:
        """Fold pieces below min_chunk_size into a neighbour when the result still fits."""
        merged: List[str] = []
        for piece in pieces:
            if merged and estimate_tokens(piece) < config.min_chunk_size:
                combined = f"{merged[-1]} {piece}"
                if estimate_tokens(combined) <= config.max_chunk_size:
                    merged[-1] = combined
                    continue
            if merged and estimate_tokens(merged[-1]) < config.min_chunk_size:
                combined = f"{merged[-1]} {piece}"
                if estimate_tokens(combined) <= config.max_chunk_size:
                    merged[-1] = combined
                    continue
            merged.append(piece)
        return merged

    # =========================================================================
    # OVERLAP
    # =========================================================================

    def _add_overlap_and_metadata(
        self,
        pieces: List[str],
        config: ChunkingConfig,
    ) -> List[DocumentChunk]:
        words_wanted = math.floor(config.chunk_overlap * WORDS_PER_TOKEN)
        total = len(pieces)
        chunks: List[DocumentChunk] = []

        for i, core in enumerate(pieces):
            headroom = max(0, config.max_chars - len(core))
            has_next = i < total - 1

            previous_slice = ""
            if i > 0:
                budget = headroom // 2 if has_next else headroom
                previous_slice = self._tail_slice(pieces[i - 1], words_wanted, budget)
                if previous_slice:
                    headroom -= len(previous_slice) + len(OVERLAP_MARKER)

            next_slice = ""
            if has_next:
                next_slice = self._head_slice(pieces[i + 1], words_wanted, headroom)

            content = core
            if previous_slice:
                content = previous_slice + OVERLAP_MARKER + content
            if next_slice:
                content = content + OVERLAP_MARKER + next_slice

            overlap_prev = estimate_tokens(previous_slice)
            overlap_next = estimate_tokens(next_slice)
            chunks.append(DocumentChunk(
                content=content,
                index=i,
                token_count=estimate_tokens(content),
                overlap_with_previous=overlap_prev,
                overlap_with_next=overlap_next,
                core_content=core,
                metadata={
                    "original_length": len(core),
                    "chunk_index": i,
                    "total_chunks": total,
                    "has_overlap": overlap_prev > 0 or overlap_next > 0,
                },
            ))

        return chunks

    @staticmethod
    def _tail_slice(text: str, word_count: int, char_budget: int) -> str:
        if word_count <= 0 or char_budget <= len(OVERLAP_MARKER):
            return ""
        selected: List[str] = []
        length = len(OVERLAP_MARKER)
        for word in reversed(text.split(" ")[-word_count:]):
            added = len(word) + (1 if selected else 0)
            if length + added > char_budget:
                break
            selected.append(word)
            length += added
        return " ".join(reversed(selected)).strip()

    @staticmethod
    def _head_slice(text: str, word_count: int, char_budget: int) -> str:
        if word_count <= 0 or char_budget <= len(OVERLAP_MARKER):
            return ""
        selected: List[str] = []
        length = len(OVERLAP_MARKER)
        for word in text.split(" ")[:word_count]:
            added = len(word) + (1 if selected else 0)
            if length + added > char_budget:
                break
            selected.append(word)
            length += added
        return " ".join(selected).strip()

    # =========================================================================
    # VALIDATION
    # =========================================================================

    @staticmethod
    def _validate_chunks(chunks: List[DocumentChunk], config: ChunkingConfig) -> List[DocumentChunk]:
        sole = len(chunks) == 1
        valid = []
        for chunk in chunks:
            if chunk.token_count < config.min_chunk_size and not sole:
                logger.warning(
                    f"Filtered out chunk {chunk.index} "
                    f"({chunk.token_count} tokens < {config.min_chunk_size} minimum)"
                )
                continue
            if chunk.token_count > config.max_chunk_size:
                logger.warning(
                    f"Filtered out chunk {chunk.index} "
                    f"({chunk.token_count} tokens > {config.max_chunk_size} maximum)"
                )
                continue
            valid.append(chunk)
        return valid
