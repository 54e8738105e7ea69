"""
Tests for the memory context manager.
"""

from datetime import datetime, timedelta, timezone

import pytest

from aris.cache.redis_cache import RedisCache
from aris.rag.context import MemoryContextConfig, MemoryContextManager, StaticPlanLookup
from aris.rag.memory_store import InMemoryMemoryStore
from aris.rag.models import MemoryContextResult, MemoryItem

from conftest import FakeEmbedder, hashed_embedding

ORG = "org-1"
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
OPEN = {"relevance_threshold": 0.0}


def memory(memory_id, content, importance=0.5, age_days=0, user_id=None, org=ORG, memory_type="fact", **metadata):
    return MemoryItem(
        id=memory_id,
        content=content,
        memory_type=memory_type,
        importance_score=importance,
        created_at=NOW - timedelta(days=age_days),
        metadata=metadata,
        user_id=user_id,
        organization_id=org,
    )


class CountingPlanLookup(StaticPlanLookup):
    def __init__(self, *args, fail=False, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail = fail
        self.plan_calls = 0

    async def get_plan(self, organization_id):
        self.plan_calls += 1
        if self.fail:
            raise RuntimeError("plans table unavailable")
        return await super().get_plan(organization_id)


class FailingAccessStore(InMemoryMemoryStore):
    async def record_access(self, *args, **kwargs):
        raise RuntimeError("access log unavailable")


@pytest.fixture
def memory_store():
    return InMemoryMemoryStore()


@pytest.fixture
def plan_lookup():
    return CountingPlanLookup()


@pytest.fixture
def manager(memory_store, embedder, plan_lookup, error_log):
    return MemoryContextManager(
        memory_store, embedder, plan_lookup,
        cache=RedisCache(None), error_log=error_log, clock=lambda: NOW,
    )


def add(store, item):
    store.add_memory(item, hashed_embedding(item.content))


class TestMemoryContextConfig:
    """Tests for config overrides."""

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            MemoryContextConfig(max_context_size=0)

    def test_unknown_override_rejected(self):
        with pytest.raises(ValueError):
            MemoryContextConfig().with_overrides({"max_tokens": 10})

    def test_round_trip_ignores_unknown_keys(self):
        config = MemoryContextConfig.from_dict({**MemoryContextConfig(max_context_size=900).to_dict(), "x": 1})
        assert config.max_context_size == 900


class TestGetConfigForOrganization:
    """Tests for plan-based configuration."""

    @pytest.mark.asyncio
    async def test_no_plan_uses_defaults(self, manager):
        config = await manager.get_config_for_organization(ORG)
        assert config == MemoryContextConfig()

    @pytest.mark.asyncio
    async def test_plan_features_and_user_override(self, manager, plan_lookup):
        plan_lookup.plans[ORG] = {
            "tier": "premium",
            "features": {"max_context_size": 8000, "recency_weight": 0.4, "enable_memory_compression": False},
        }
        plan_lookup.user_settings[(ORG, "u1")] = {"memory_context_size": 6000}

        org_config = await manager.get_config_for_organization(ORG)
        user_config = await manager.get_config_for_organization(ORG, "u1")

        assert org_config.subscription_tier == "premium"
        assert org_config.max_context_size == 8000
        assert org_config.recency_weight == 0.4
        assert org_config.enable_memory_compression is False
        assert org_config.relevance_threshold == 0.7
        assert user_config.max_context_size == 6000

    @pytest.mark.asyncio
    async def test_config_is_cached(self, manager, plan_lookup):
        plan_lookup.plans[ORG] = {"tier": "basic", "features": {}}
        await manager.get_config_for_organization(ORG)
        config = await manager.get_config_for_organization(ORG)

        assert plan_lookup.plan_calls == 1
        assert config.subscription_tier == "basic"

    @pytest.mark.asyncio
    async def test_lookup_failure_falls_back(self, memory_store, embedder, error_log):
        manager = MemoryContextManager(
            memory_store, embedder, CountingPlanLookup(fail=True), cache=RedisCache(None), error_log=error_log,
        )
        config = await manager.get_config_for_organization(ORG)

        assert config == MemoryContextConfig()
        assert error_log.count("context.config") == 1


class TestBuildOptimizedContext:
    """Tests for the full context build."""

    @pytest.mark.asyncio
    async def test_scopes_to_tenant_and_user(self, manager, memory_store):
        add(memory_store, memory("m1", "customer prefers express delivery", user_id="u1"))
        add(memory_store, memory("m2", "customer prefers invoices by email"))
        add(memory_store, memory("m3", "customer prefers phone calls", user_id="u2"))
        add(memory_store, memory("m4", "customer prefers weekend delivery", org="org-2"))

        result = await manager.build_optimized_context("customer prefers", ORG, "u1", config=OPEN)

        assert {m.id for m in result.memories} == {"m1", "m2"}
        assert result.metadata["memory_count"]["retrieved"] == 2

    @pytest.mark.asyncio
    async def test_low_importance_excluded(self, manager, memory_store):
        add(memory_store, memory("m1", "roof box order", importance=0.2))
        add(memory_store, memory("m2", "roof box order", importance=0.3))

        result = await manager.build_optimized_context("roof box order", ORG, config=OPEN)
        assert [m.id for m in result.memories] == ["m2"]

    @pytest.mark.asyncio
    async def test_prioritizes_by_importance_and_recency(self, manager, memory_store):
        add(memory_store, memory("recent", "roof box note", importance=0.5, age_days=0))
        add(memory_store, memory("old", "roof box note", importance=0.9, age_days=60))
        add(memory_store, memory("best", "roof box note", importance=0.7, age_days=0))

        result = await manager.build_optimized_context("roof box note", ORG, config=OPEN)

        assert [m.id for m in result.memories] == ["best", "old", "recent"]
        assert result.prioritization_strategy == "recency-importance-compression"
        assert result.truncated is False

    @pytest.mark.asyncio
    async def test_long_term_memory_disabled_drops_old_items(self, manager, memory_store):
        add(memory_store, memory("new", "roof box note", age_days=5))
        add(memory_store, memory("old", "roof box note", age_days=45))

        result = await manager.build_optimized_context(
            "roof box note", ORG, config={**OPEN, "enable_long_term_memory": False},
        )
        assert [m.id for m in result.memories] == ["new"]

    @pytest.mark.asyncio
    async def test_undated_memory_outside_recency_window(self, manager, memory_store):
        """Test undated memories are skipped, matching the SQL date filter."""
        add(memory_store, memory("new", "roof box note", age_days=5))
        undated = memory("undated", "roof box note")
        undated.created_at = None
        add(memory_store, undated)

        result = await manager.build_optimized_context(
            "roof box note", ORG, config={**OPEN, "enable_long_term_memory": False},
        )

        assert result.prioritization_strategy != "error"
        assert [m.id for m in result.memories] == ["new"]

    @pytest.mark.asyncio
    async def test_window_never_splits_items(self, manager, memory_store):
        for i in range(5):
            add(memory_store, memory(f"m{i}", "roof box note " + "x" * 36))

        result = await manager.build_optimized_context(
            "roof box note", ORG, config={**OPEN, "max_context_size": 30, "enable_memory_compression": False},
        )

        assert len(result.memories) == 2
        assert result.total_tokens == 26
        assert result.truncated is True
        assert result.metadata["context_utilization"] == pytest.approx(26 / 30)

    @pytest.mark.asyncio
    async def test_related_memories_compressed(self, manager, memory_store):
        for i in range(3):
            add(memory_store, memory(f"c{i}", f"roof box order detail {i} " + "y" * 40,
                                     importance=0.5 + i / 10, entityId="cust-1"))
        add(memory_store, memory("other", "roof box order unrelated " + "z" * 40, entityId="cust-2"))

        result = await manager.build_optimized_context(
            "roof box order", ORG, config={**OPEN, "max_context_size": 60},
        )

        merged = next(m for m in result.memories if m.metadata.get("compressed"))
        assert merged.id == "c2"
        assert "Additional context:" in merged.content
        assert set(merged.metadata["original_memory_ids"]) == {"c0", "c1", "c2"}
        assert result.metadata["memory_count"]["compressed"] == 2

    @pytest.mark.asyncio
    async def test_four_entities_compress_to_four_items(self, manager, memory_store):
        """Test 20 memories over 4 entities collapse into 4 compressed items."""
        for i in range(20):
            add(memory_store, memory(f"m{i}", "roof box note " + "w" * 186, entityId=f"cust-{i % 4}"))

        result = await manager.build_optimized_context(
            "roof box note", ORG, config={**OPEN, "max_context_size": 800},
        )

        assert result.metadata["memory_count"]["retrieved"] == 20
        assert result.metadata["memory_count"]["compressed"] == 4
        assert all(m.metadata["compressed"] for m in result.memories)
        assert all(len(m.metadata["original_memory_ids"]) == 5 for m in result.memories)
        assert result.total_tokens <= 800
        assert result.truncated is True

    @pytest.mark.asyncio
    async def test_failure_returns_error_result(self, memory_store, plan_lookup, error_log):
        manager = MemoryContextManager(
            memory_store, FakeEmbedder(fail=True), plan_lookup, cache=RedisCache(None), error_log=error_log,
        )
        result = await manager.build_optimized_context("anything", ORG)

        assert result.memories == []
        assert result.prioritization_strategy == "error"
        assert result.metadata["memory_count"] == {"retrieved": 0, "selected": 0, "compressed": 0}
        assert error_log.count("context.build") == 1

    @pytest.mark.asyncio
    async def test_access_recorded_for_included_memories(self, manager, memory_store):
        add(memory_store, memory("m1", "roof box note"))

        await manager.build_optimized_context("roof box note", ORG, "u1", config=OPEN)
        await manager.flush()

        assert len(memory_store.accesses) == 1
        access = memory_store.accesses[0]
        assert access["memory_id"] == "m1"
        assert access["access_type"] == "retrieve"
        assert access["user_id"] == "u1"

    @pytest.mark.asyncio
    async def test_access_failure_does_not_affect_result(self, embedder, plan_lookup, error_log):
        store = FailingAccessStore()
        add(store, memory("m1", "roof box note"))
        manager = MemoryContextManager(store, embedder, plan_lookup, cache=RedisCache(None), error_log=error_log)

        result = await manager.build_optimized_context("roof box note", ORG, config=OPEN)
        await manager.flush()

        assert [m.id for m in result.memories] == ["m1"]
        assert error_log.count("context.record_access") == 1


class TestPipelineStages:
    """Tests for the individual stages."""

    def test_fit_to_context_window(self):
        items = [memory(f"m{i}", "a" * 40) for i in range(3)]
        fitted, total, truncated = MemoryContextManager.fit_to_context_window(items, 25)
        assert [m.id for m in fitted] == ["m0", "m1"]
        assert total == 20
        assert truncated is True

    def test_group_requires_same_type(self, manager):
        items = [
            memory("a", "x", entityId="e1"),
            memory("b", "y", entityId="e1", memory_type="interaction"),
            memory("c", "z", contextId="ctx", entityId="e1"),
        ]
        groups = manager.group_related_memories(items)
        assert [[m.id for m in g] for g in groups] == [["a", "c"], ["b"]]

    def test_compress_empty_group_rejected(self, manager):
        with pytest.raises(ValueError):
            manager.compress_group([])

    def test_no_compression_within_budget(self, manager):
        items = [memory("a", "short", entityId="e1"), memory("b", "short", entityId="e1")]
        compressed, count = manager.compress_if_needed(items, 100)
        assert compressed == items
        assert count == 0

    def test_strategy_names(self):
        assert MemoryContextManager.prioritization_strategy(MemoryContextConfig(
            enable_context_prioritization=False, enable_memory_compression=False,
        )) == "none"
        assert MemoryContextManager.prioritization_strategy(MemoryContextConfig(
            recency_weight=0, enable_memory_compression=False,
        )) == "importance"

    def test_format_for_prompt(self):
        result = MemoryContextResult(memories=[memory("a", "likes red"), memory("b", "pays late")])
        assert MemoryContextManager.format_for_prompt(result) == "[1] (fact) likes red\n\n[2] (fact) pays late"
