"""
Tests for live ERP email responses.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from aris.data.metakocka_client import ERPContext, MetakockaAPIError
from aris.rag.generation import RAGGenerator
from aris.rag.live_erp import (
    LiveCustomerData,
    LiveERPResponder,
    UpsellCandidate,
    parse_order_date,
)
from aris.rag.models import ContentItem, RetrievedChunk, SourceType

ORG = "org-1"
NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def order(order_id, date, customer_id="7", status="shipped", tracking=None):
    return {
        "id": order_id, "order_number": f"SO-{order_id}", "customer_id": customer_id,
        "order_date": date, "total_amount": 100.0, "currency": "EUR", "status": status,
        "tracking_number": tracking, "delivery_address": "Slovenska 1, Ljubljana",
    }


def erp_context(order_count=6):
    orders = [order(str(i), f"2024-05-{10 + i:02d}") for i in range(order_count)]
    orders.append(order("x", "2024-05-30", customer_id="8"))
    return ERPContext(
        products=[{"id": str(i), "name": f"Product {i}"} for i in range(25)],
        customers=[
            {"id": "7", "name": "Ana Novak", "email": "Ana@Example.si"},
            {"id": "8", "name": "Marko Horvat", "email": "marko@example.hr"},
        ],
        orders=orders,
    )


def erp_client(context=None):
    client = MagicMock()
    client.get_ai_context.return_value = context or erp_context()
    return client


def product_chunk(source_id, similarity):
    return RetrievedChunk(
        id=source_id, content="", similarity=similarity, knowledge_base_id="kb",
        source_type=SourceType.PRODUCT, source_id=source_id, title=f"Product {source_id}",
    )


@pytest.fixture
def responder_factory(retriever, llm, error_log):
    def build(client=None):
        return LiveERPResponder(
            retriever, RAGGenerator(retriever, llm), erp_client=client, error_log=error_log, clock=lambda: NOW,
        )
    return build


class TestParseOrderDate:
    """Tests for ERP date parsing."""

    def test_formats(self):
        assert parse_order_date("2024-05-10") == datetime(2024, 5, 10, tzinfo=timezone.utc)
        assert parse_order_date("2024-05-10+02:00") == datetime(2024, 5, 10, tzinfo=timezone.utc)
        assert parse_order_date(datetime(2024, 5, 10)) == datetime(2024, 5, 10, tzinfo=timezone.utc)

    def test_invalid(self):
        assert parse_order_date(None) is None
        assert parse_order_date("soon") is None


class TestLiveCustomerData:
    """Tests for the live ERP lookup."""

    @pytest.mark.asyncio
    async def test_no_client(self, responder_factory):
        live = await responder_factory().get_live_customer_data("ana@example.si")
        assert live == LiveCustomerData()

    @pytest.mark.asyncio
    async def test_customer_orders(self, responder_factory):
        live = await responder_factory(erp_client()).get_live_customer_data(" ana@example.si ", "u1", ORG)

        assert live.customer["id"] == "7"
        assert live.total_orders == 6
        assert [o["id"] for o in live.recent_orders] == ["5", "4", "3", "2", "1"]
        assert live.last_order_date == datetime(2024, 5, 15, tzinfo=timezone.utc)
        assert live.shipping_status[0] == {
            "order_number": "SO-5", "status": "shipped", "tracking_number": None,
            "delivery_address": "Slovenska 1, Ljubljana",
        }
        assert len(live.available_products) == 20

    @pytest.mark.asyncio
    async def test_unknown_customer(self, responder_factory):
        live = await responder_factory(erp_client()).get_live_customer_data("nobody@example.com")

        assert live.customer is None
        assert live.total_orders == 0
        assert len(live.available_products) == 10

    @pytest.mark.asyncio
    async def test_erp_failure_is_suppressed(self, responder_factory, error_log):
        client = MagicMock()
        client.get_ai_context.side_effect = MetakockaAPIError("timeout")

        live = await responder_factory(client).get_live_customer_data("ana@example.si", organization_id=ORG)

        assert live == LiveCustomerData()
        assert error_log.count("live_erp.context") == 1


class TestUpsell:
    """Tests for upsell ranking."""

    def test_priority_boosts(self, responder_factory):
        responder = responder_factory()
        live = LiveCustomerData(
            customer={"id": "7"}, total_orders=6, last_order_date=datetime(2024, 5, 20, tzinfo=timezone.utc),
        )
        assert responder.upsell_priority(product_chunk("a", 0.8), live) == pytest.approx(115.0)

        quiet = LiveCustomerData(customer={"id": "7"}, total_orders=2,
                                 last_order_date=datetime(2024, 1, 1, tzinfo=timezone.utc))
        assert responder.upsell_priority(product_chunk("a", 0.8), quiet) == pytest.approx(80.0)

    def test_ranking(self, responder_factory):
        live = LiveCustomerData(customer={"id": "7"})
        ranked = responder_factory().rank_upsell([product_chunk("a", 0.7), product_chunk("b", 0.9)], live)
        assert [c.source_id for c in ranked] == ["b", "a"]

    def test_no_customer_no_upsell(self, responder_factory):
        assert responder_factory().rank_upsell([product_chunk("a", 0.9)], LiveCustomerData()) == []


class TestBuildPreamble:
    """Tests for prompt preamble rendering."""

    def test_unknown_customer(self):
        assert LiveERPResponder.build_preamble(LiveCustomerData(), []) == (
            "Customer Context (live ERP data):\n- Customer not found in ERP"
        )

    def test_full_preamble(self):
        live = LiveCustomerData(
            customer={"name": "Ana Novak"},
            total_orders=3,
            last_order_date=datetime(2024, 5, 15, tzinfo=timezone.utc),
            recent_orders=[order("1", "2024-05-15"), order("2", "2024-05-01"), order("3", "2024-04-01")],
            shipping_status=[{"order_number": "SO-1", "status": "shipped", "tracking_number": "TRK1"}],
        )
        upsell = [UpsellCandidate("a", "Roof Bars", 0.9, 90), UpsellCandidate("b", "Straps", 0.8, 80),
                  UpsellCandidate("c", "Lock", 0.7, 70)]

        text = LiveERPResponder.build_preamble(live, upsell)

        assert text == "\n".join([
            "Customer Context (live ERP data):",
            "- Customer: Ana Novak",
            "- Total orders: 3",
            "- Last order: 2024-05-15",
            "",
            "Recent Orders:",
            "- Order SO-1: 100.0 EUR (shipped)",
            "- Order SO-2: 100.0 EUR (shipped)",
            "",
            "Shipping Status:",
            "- SO-1: shipped, tracking TRK1",
            "",
            "Recommended Products:",
            "- Roof Bars",
            "- Straps",
        ])


class TestGenerateEmailWithLiveData:
    """Tests for the end-to-end live ERP reply."""

    @pytest.mark.asyncio
    async def test_reply_with_upsell(self, responder_factory, ingestion, llm):
        await ingestion.ingest_content(ORG, ContentItem(
            title="Roof Box 400L", content="roof box", source_type=SourceType.PRODUCT, source_id="p1",
        ))
        context = erp_context()
        context.orders.append(order("9", "2024-05-28"))
        responder = responder_factory(erp_client(context))

        result = await responder.generate_email_with_live_data(
            "I need a roof box roof box roof box", "ana@example.si", ORG, "u1",
        )

        assert result.response == llm.content
        assert result.sentiment == 0.0
        assert result.live_data.total_orders == 7
        assert [c.source_id for c in result.related_products] == ["p1"]
        assert result.upsell_products[0].source_id == "p1"
        assert result.upsell_products[0].priority > result.upsell_products[0].similarity * 100

        system = llm.calls[0]["system"]
        assert "- Customer: Ana Novak" in system
        assert "- Roof Box 400L" in system
        assert system.index("Customer Context") < system.index("[1] Roof Box 400L")

    @pytest.mark.asyncio
    async def test_negative_sentiment_skips_upsell(self, responder_factory, ingestion):
        await ingestion.ingest_content(ORG, ContentItem(
            title="Roof Box 400L", content="roof box", source_type=SourceType.PRODUCT, source_id="p1",
        ))
        responder = responder_factory(erp_client())

        result = await responder.generate_email_with_live_data(
            "my roof box roof box roof box arrived damaged", "ana@example.si", ORG,
        )

        assert result.sentiment < 0
        assert result.upsell_products == []
