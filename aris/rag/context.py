"""
Memory Context Manager
======================

Builds a bounded, prioritized memory context for AI interactions.

Pipeline:
1. Search memories above the relevance threshold (own + shared items)
2. Prioritize: (importance + recency * recency_weight) * (1 + importance_weight),
   recency decaying linearly to 0 at 30 days
3. Compress related memories when the estimate exceeds the budget
4. Fit to the window greedily; items are never partially included

Configuration depends on the organization's subscription plan, with
per-user overrides on top; lookups are cached and fall back to
defaults on failure. The build never raises: errors yield an empty
result marked with the "error" strategy.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, fields, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from ..cache.redis_cache import RedisCache
from ..logging_config import SuppressedErrorLog
from .chunker import CONTEXT_CHARS_PER_TOKEN, estimate_tokens
from .embedder import RAGEmbedder
from .memory_store import MemoryStore
from .models import MemoryContextResult, MemoryItem

logger = logging.getLogger(__name__)


RECENCY_WINDOW_DAYS = 30
MIN_IMPORTANCE = 0.3
SEARCH_LIMIT = 50

# Metadata keys that mark two memories as referring to the same thing
RELATION_KEYS = ("entityId", "entityType", "contextId")


@dataclass
class MemoryContextConfig:
    """Tier-dependent context assembly settings."""
    max_context_size: int = 4000
    relevance_threshold: float = 0.7
    recency_weight: float = 0.3
    importance_weight: float = 0.5
    subscription_tier: str = "free"
    enable_long_term_memory: bool = True
    enable_memory_compression: bool = True
    enable_context_prioritization: bool = True

    def __post_init__(self):
        if self.max_context_size <= 0:
            raise ValueError("max_context_size must be positive")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryContextConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def with_overrides(self, overrides: Optional[Dict[str, Any]]) -> "MemoryContextConfig":
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown context config keys: {sorted(unknown)}")
        return replace(self, **overrides)


class StaticPlanLookup:
    """Plan lookup backed by dictionaries, for the in-memory service graph."""

    def __init__(
        self,
        plans: Optional[Dict[str, Dict[str, Any]]] = None,
        user_settings: Optional[Dict[Tuple[str, str], Dict[str, Any]]] = None,
    ):
        self.plans = plans or {}
        self.user_settings = user_settings or {}

    async def get_plan(self, organization_id: str) -> Optional[Dict[str, Any]]:
        return self.plans.get(organization_id)

    async def get_user_settings(self, organization_id: str, user_id: str) -> Dict[str, Any]:
        return self.user_settings.get((organization_id, user_id), {})


def memory_tokens(memories: List[MemoryItem]) -> int:
    return sum(estimate_tokens(m.content, CONTEXT_CHARS_PER_TOKEN) for m in memories)


class MemoryContextManager:
    """
    Optimizes the memory context window for AI interactions.

    Access recording for included memories runs as background tasks;
    call `flush()` to wait for them.
    """

    def __init__(
        self,
        memory_store: MemoryStore,
        embedder: RAGEmbedder,
        plan_lookup: Any,
        cache: Optional[RedisCache] = None,
        error_log: Optional[SuppressedErrorLog] = None,
        defaults: Optional[MemoryContextConfig] = None,
        config_cache_ttl: int = 300,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.memory_store = memory_store
        self.embedder = embedder
        self.plan_lookup = plan_lookup
        self.cache = cache or RedisCache()
        self.error_log = error_log or SuppressedErrorLog()
        self.defaults = defaults or MemoryContextConfig()
        self.config_cache_ttl = config_cache_ttl
        self._clock = clock
        self._pending: Set[asyncio.Task] = set()

    # =========================================================================
    # CONFIGURATION
    # =========================================================================

    async def get_config_for_organization(
        self,
        organization_id: str,
        user_id: Optional[str] = None,
    ) -> MemoryContextConfig:
        """Plan-based config with user overrides; defaults if any lookup fails."""
        cache_key = f"memory_context_config:{organization_id}:{user_id or '-'}"
        cached = self.cache.get(cache_key)
        if cached is not None:
            return MemoryContextConfig.from_dict(cached)

        try:
            plan = await self.plan_lookup.get_plan(organization_id)
            if plan is None:
                logger.warning(f"[Memory Context] No active plan for {organization_id}, using defaults")
                return replace(self.defaults)

            features = plan.get("features") or {}
            d = self.defaults
            config = MemoryContextConfig(
                max_context_size=int(features.get("max_context_size") or d.max_context_size),
                relevance_threshold=float(features.get("relevance_threshold") or d.relevance_threshold),
                recency_weight=float(features.get("recency_weight") or d.recency_weight),
                importance_weight=float(features.get("importance_weight") or d.importance_weight),
                subscription_tier=plan.get("tier") or d.subscription_tier,
                enable_long_term_memory=bool(features.get("enable_long_term_memory", d.enable_long_term_memory)),
                enable_memory_compression=bool(features.get("enable_memory_compression", d.enable_memory_compression)),
                enable_context_prioritization=bool(
                    features.get("enable_context_prioritization", d.enable_context_prioritization)
                ),
            )

            if user_id:
                settings = await self.plan_lookup.get_user_settings(organization_id, user_id)
                if settings.get("memory_context_size"):
                    config.max_context_size = int(settings["memory_context_size"])

        except Exception as e:
            self.error_log.record("context.config", e, organization_id=organization_id, user_id=user_id)
            return replace(self.defaults)

        self.cache.set(cache_key, config.to_dict(), ttl_seconds=self.config_cache_ttl)
        return config

    # =========================================================================
    # BUILD
    # =========================================================================

    async def build_optimized_context(
        self,
        query: str,
        organization_id: str,
        user_id: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> MemoryContextResult:
        """
        Build an optimized memory context.

        Args:
            query: Current query or conversation context
            organization_id: Tenant scope
            user_id: Restricts to this user's memories plus shared ones
            config: Field overrides on top of the organization config

        Returns:
            MemoryContextResult; empty with strategy "error" on failure
        """
        start = time.time()

        try:
            final = (await self.get_config_for_organization(organization_id, user_id)).with_overrides(config)

            candidates = await self._search_relevant_memories(query, organization_id, user_id, final)

            if final.enable_context_prioritization:
                processed = self.prioritize_memories(candidates, final)
            else:
                processed = list(candidates)

            compressed_count = 0
            if final.enable_memory_compression:
                processed, compressed_count = self.compress_if_needed(processed, final.max_context_size)

            memories, total_tokens, truncated = self.fit_to_context_window(processed, final.max_context_size)

            self._record_access(memories, organization_id, user_id, query)

            elapsed_ms = int((time.time() - start) * 1000)
            logger.debug(
                f"[Memory Context] {len(memories)}/{len(candidates)} memories, "
                f"{total_tokens}/{final.max_context_size} tokens, truncated={truncated}"
            )
            return MemoryContextResult(
                memories=memories,
                total_tokens=total_tokens,
                truncated=truncated,
                prioritization_strategy=self.prioritization_strategy(final),
                metadata={
                    "retrieval_time_ms": elapsed_ms,
                    "memory_count": {
                        "retrieved": len(candidates),
                        "selected": len(memories),
                        "compressed": compressed_count,
                    },
                    "context_utilization": total_tokens / final.max_context_size,
                    "subscription_tier": final.subscription_tier,
                },
            )

        except Exception as e:
            self.error_log.record("context.build", e, organization_id=organization_id, user_id=user_id)
            logger.error(f"[Memory Context] Error building optimized context: {e}")
            return MemoryContextResult(
                prioritization_strategy="error",
                metadata={
                    "retrieval_time_ms": int((time.time() - start) * 1000),
                    "memory_count": {"retrieved": 0, "selected": 0, "compressed": 0},
                    "context_utilization": 0,
                },
            )

    async def _search_relevant_memories(
        self,
        query: str,
        organization_id: str,
        user_id: Optional[str],
        config: MemoryContextConfig,
    ) -> List[MemoryItem]:
        embedding = await self.embedder.embed_query(query)
        created_after = None
        if not config.enable_long_term_memory:
            created_after = self._clock() - timedelta(days=RECENCY_WINDOW_DAYS)

        memories = await self.memory_store.search_memories(
            organization_id,
            embedding,
            similarity_threshold=config.relevance_threshold,
            min_importance=MIN_IMPORTANCE,
            limit=SEARCH_LIMIT,
            created_after=created_after,
        )
        if user_id:
            memories = [m for m in memories if m.user_id is None or m.user_id == user_id]
        return memories

    # =========================================================================
    # PIPELINE STAGES
    # =========================================================================

    def priority_score(self, memory: MemoryItem, config: MemoryContextConfig) -> float:
        score = memory.importance_score
        if memory.created_at is not None:
            age_days = (self._clock() - memory.created_at).total_seconds() / 86400
            recency = max(0.0, 1 - age_days / RECENCY_WINDOW_DAYS)
            score += recency * config.recency_weight
        return score * (1 + config.importance_weight)

    def prioritize_memories(self, memories: List[MemoryItem], config: MemoryContextConfig) -> List[MemoryItem]:
        return sorted(memories, key=lambda m: self.priority_score(m, config), reverse=True)

    def compress_if_needed(self, memories: List[MemoryItem], max_tokens: int) -> Tuple[List[MemoryItem], int]:
        """
        Merge related memories when the total estimate exceeds `max_tokens`.

        Returns the (possibly) compressed list and the number of items the
        compression stage produced (0 when no compression was needed).
        """
        if memory_tokens(memories) <= max_tokens:
            return memories, 0

        compressed = [
            group[0] if len(group) == 1 else self.compress_group(group)
            for group in self.group_related_memories(memories)
        ]
        logger.debug(
            f"[Memory Context] Compressed {len(memories)} memories into {len(compressed)} "
            f"({memory_tokens(memories)} -> {memory_tokens(compressed)} tokens)"
        )
        return compressed, len(compressed)

    @staticmethod
    def _are_related(first: MemoryItem, second: MemoryItem) -> bool:
        for key in RELATION_KEYS:
            value = first.metadata.get(key)
            if value and value == second.metadata.get(key):
                return True
        return False

    def group_related_memories(self, memories: List[MemoryItem]) -> List[List[MemoryItem]]:
        """Group each unassigned memory with later ones of the same type related to it."""
        groups: List[List[MemoryItem]] = []
        assigned: Set[int] = set()

        for i, leader in enumerate(memories):
            if i in assigned:
                continue
            group = [leader]
            assigned.add(i)
            for j in range(i + 1, len(memories)):
                if j in assigned:
                    continue
                other = memories[j]
                if other.memory_type == leader.memory_type and self._are_related(leader, other):
                    group.append(other)
                    assigned.add(j)
            groups.append(group)

        return groups

    def compress_group(self, group: List[MemoryItem]) -> MemoryItem:
        """Merge a group into its most important member."""
        if not group:
            raise ValueError("Cannot compress empty memory group")
        if len(group) == 1:
            return group[0]

        ordered = sorted(group, key=lambda m: m.importance_score, reverse=True)
        base = ordered[0]
        additional = "\n".join(f"- {m.content}" for m in ordered[1:])

        return replace(
            base,
            content=f"{base.content}\n\nAdditional context:\n{additional}",
            metadata={
                **base.metadata,
                "compressed": True,
                "original_memory_ids": [m.id for m in ordered if m.id],
                "compression_date": self._clock().isoformat(),
            },
        )

    @staticmethod
    def fit_to_context_window(memories: List[MemoryItem], max_tokens: int) -> Tuple[List[MemoryItem], int, bool]:
        fitted: List[MemoryItem] = []
        total = 0
        for memory in memories:
            tokens = estimate_tokens(memory.content, CONTEXT_CHARS_PER_TOKEN)
            if total + tokens > max_tokens:
                return fitted, total, True
            fitted.append(memory)
            total += tokens
        return fitted, total, False

    @staticmethod
    def prioritization_strategy(config: MemoryContextConfig) -> str:
        strategies = []
        if config.enable_context_prioritization:
            if config.recency_weight > 0:
                strategies.append("recency")
            if config.importance_weight > 0:
                strategies.append("importance")
        if config.enable_memory_compression:
            strategies.append("compression")
        return "-".join(strategies) or "none"

    @staticmethod
    def format_for_prompt(result: MemoryContextResult) -> str:
        """Render included memories as numbered lines for an LLM prompt."""
        return "\n\n".join(
            f"[{i}] ({m.memory_type}) {m.content}" for i, m in enumerate(result.memories, 1)
        )

    # =========================================================================
    # ACCESS RECORDING
    # =========================================================================

    def _record_access(
        self,
        memories: List[MemoryItem],
        organization_id: str,
        user_id: Optional[str],
        query: str,
    ) -> None:
        for memory in memories:
            if not memory.id:
                continue
            task = asyncio.create_task(self._record_one(memory.id, organization_id, user_id, query))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _record_one(self, memory_id: str, organization_id: str, user_id: Optional[str], query: str) -> None:
        try:
            await self.memory_store.record_access(memory_id, organization_id, "retrieve", user_id, query)
        except Exception as e:
            self.error_log.record("context.record_access", e, organization_id=organization_id, user_id=user_id)

    async def flush(self) -> None:
        """Wait for pending access-recording writes."""
        if self._pending:
            await asyncio.gather(*list(self._pending))
