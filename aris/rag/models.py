"""
RAG Data Models
===============

Dataclasses shared by the chunker, ingestion pipeline, retriever,
adapters, memory context manager and generator.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class SourceType(str, Enum):
    """Where a piece of knowledge came from."""
    PRODUCT = "product"
    DOCUMENT = "document"
    METAKOCKA = "metakocka"
    MAGENTO = "magento"
    OTHER = "other"


# =============================================================================
# METADATA
# =============================================================================

Scalar = Union[str, int, float, bool, None]
MetadataValue = Union[Scalar, List[Scalar]]
Metadata = Dict[str, MetadataValue]

_SCALAR_TYPES = (str, int, float, bool, type(None))


class InvalidMetadataError(ValueError):
    """A metadata bag contains a value outside the allowed kinds."""
    pass


def validate_metadata(metadata: Optional[Dict[str, Any]]) -> Metadata:
    """
    Validate a metadata bag and return it as a plain dict.

    Keys must be strings; values must be scalars or flat lists of scalars.
    Known keys are type-checked: `language` is a two-letter code,
    `category` a string, `price` a non-negative number.

    Raises:
        InvalidMetadataError: on the first violation found
    """
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise InvalidMetadataError(f"metadata must be a dict, got {type(metadata).__name__}")

    for key, value in metadata.items():
        if not isinstance(key, str):
            raise InvalidMetadataError(f"metadata key {key!r} is not a string")
        if isinstance(value, list):
            for item in value:
                if not isinstance(item, _SCALAR_TYPES):
                    raise InvalidMetadataError(
                        f"metadata['{key}'] contains non-scalar item of type {type(item).__name__}"
                    )
        elif not isinstance(value, _SCALAR_TYPES):
            raise InvalidMetadataError(
                f"metadata['{key}'] has unsupported type {type(value).__name__}"
            )

    language = metadata.get("language")
    if language is not None and not (isinstance(language, str) and len(language) == 2 and language.isalpha()):
        raise InvalidMetadataError(f"metadata['language'] must be a 2-letter code, got {language!r}")

    category = metadata.get("category")
    if category is not None and not isinstance(category, str):
        raise InvalidMetadataError(f"metadata['category'] must be a string, got {category!r}")

    price = metadata.get("price")
    if price is not None:
        if isinstance(price, bool) or not isinstance(price, (int, float)) or price < 0:
            raise InvalidMetadataError(f"metadata['price'] must be a non-negative number, got {price!r}")

    return dict(metadata)


def clean_metadata(metadata: Dict[str, Any]) -> Metadata:
    """Drop None values and stringify datetimes so the bag validates."""
    cleaned: Dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, tuple):
            value = list(value)
        elif not isinstance(value, (list,) + _SCALAR_TYPES):
            value = str(value)
        cleaned[key] = value
    return cleaned


# =============================================================================
# INGESTION
# =============================================================================

@dataclass
class ContentItem:
    """A unit of ingestible knowledge produced by an adapter."""
    title: str
    content: str
    source_type: SourceType
    source_id: str
    metadata: Metadata = field(default_factory=dict)
    force_update: bool = False

    def __post_init__(self):
        if isinstance(self.source_type, str):
            self.source_type = SourceType(self.source_type)
        if not self.source_id:
            raise ValueError("source_id is required")
        self.metadata = validate_metadata(self.metadata)


@dataclass
class DocumentChunk:
    """A bounded slice of a content item's text."""
    content: str
    index: int
    token_count: int
    overlap_with_previous: int = 0
    overlap_with_next: int = 0
    # The chunk text before overlap slices were attached
    core_content: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class KnowledgeSource:
    """Parent record of a content item, owned by one organization."""
    organization_id: str
    source_type: SourceType
    source_id: str
    title: str
    content_hash: str
    metadata: Metadata = field(default_factory=dict)
    id: Optional[str] = None
    status: str = "active"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class KnowledgeBaseEntry:
    """A stored, embedded chunk."""
    organization_id: str
    knowledge_base_id: str
    chunk_index: int
    content: str
    token_count: int
    embedding: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None


@dataclass
class IngestOptions:
    """Per-call ingestion options."""
    chunk_size: Optional[int] = None
    chunk_overlap: Optional[int] = None
    skip_if_exists: bool = False
    custom_metadata: Metadata = field(default_factory=dict)


@dataclass
class IngestResult:
    """Outcome of ingesting one content item."""
    knowledge_base_id: Optional[str]
    chunks_created: int
    tokens_processed: int
    processing_time_ms: int
    success: bool
    skipped: bool = False
    error: Optional[str] = None


@dataclass
class BatchResult:
    """Outcome of an adapter batch."""
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)

    def merge(self, other: "BatchResult") -> "BatchResult":
        self.processed += other.processed
        self.successful += other.successful
        self.failed += other.failed
        self.skipped += other.skipped
        self.errors.extend(other.errors)
        return self

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# RETRIEVAL
# =============================================================================

@dataclass
class RetrievalOptions:
    """Options for a retrieval call."""
    source_types: Optional[List[SourceType]] = None
    limit: int = 10
    similarity_threshold: float = 0.7
    metadata_filters: Metadata = field(default_factory=dict)

    def __post_init__(self):
        if self.source_types:
            self.source_types = [SourceType(s) for s in self.source_types]
        self.metadata_filters = validate_metadata(self.metadata_filters)


@dataclass
class RetrievedChunk:
    """A ranked view of a stored chunk. Never persisted."""
    id: str
    content: str
    similarity: float
    knowledge_base_id: str
    source_type: SourceType
    source_id: str
    title: str
    chunk_index: int = 0
    token_count: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RetrievalResult:
    chunks: List[RetrievedChunk] = field(default_factory=list)
    total_found: int = 0
    processing_time_ms: int = 0
    query_id: Optional[str] = None


# =============================================================================
# MEMORY CONTEXT
# =============================================================================

@dataclass
class MemoryItem:
    """A stored fact or interaction considered for the context window."""
    id: str
    content: str
    memory_type: str
    importance_score: float
    created_at: datetime
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    similarity: Optional[float] = None


@dataclass
class MemoryContextResult:
    memories: List[MemoryItem] = field(default_factory=list)
    total_tokens: int = 0
    truncated: bool = False
    prioritization_strategy: str = "none"
    metadata: Dict[str, Any] = field(default_factory=dict)


# =============================================================================
# GENERATION
# =============================================================================

@dataclass
class QueryContext:
    """Caller context for a generation request."""
    user_id: Optional[str] = None
    contact_id: Optional[str] = None
    email_id: Optional[str] = None
    source_types: Optional[List[SourceType]] = None
    use_memory: bool = False


@dataclass
class Citation:
    source_type: SourceType
    source_id: str
    title: str
    similarity: float


@dataclass
class RAGResponse:
    answer: str
    confidence: float
    sources: List[Citation] = field(default_factory=list)
    context_used: str = ""
    processing_time_ms: int = 0
    tokens_used: int = 0
