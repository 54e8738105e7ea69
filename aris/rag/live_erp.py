"""
Live ERP Responder
==================

Email replies that blend live ERP facts with RAG recommendations.

The ERP is the source of truth for customer, order and shipping data;
those facts are fetched per request and never embedded. The knowledge
base is only used for product and document recommendations.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ..data.metakocka_client import ERPContext, MetakockaClient
from ..logging_config import SuppressedErrorLog
from .generation import RAGGenerator
from .language import KeywordSentimentScorer, SentimentScorer
from .models import QueryContext, RetrievalOptions, RetrievedChunk, SourceType
from .retriever import RAGRetriever

logger = logging.getLogger(__name__)


RECENT_ORDERS = 5
FREQUENT_CUSTOMER_ORDERS = 5
RECENT_PURCHASE_DAYS = 30


def parse_order_date(value: Any) -> Optional[datetime]:
    """ERP document dates look like '2024-05-10' or '2024-05-10+02:00'."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value:
        return None
    try:
        return datetime.strptime(str(value)[:10], "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


@dataclass
class LiveCustomerData:
    customer: Optional[Dict[str, Any]] = None
    total_orders: int = 0
    last_order_date: Optional[datetime] = None
    recent_orders: List[Dict[str, Any]] = field(default_factory=list)
    shipping_status: List[Dict[str, Any]] = field(default_factory=list)
    available_products: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class UpsellCandidate:
    source_id: str
    title: str
    similarity: float
    priority: float


@dataclass
class LiveEmailResponse:
    response: str
    confidence: float
    sentiment: float
    live_data: LiveCustomerData
    upsell_products: List[UpsellCandidate] = field(default_factory=list)
    related_products: List[RetrievedChunk] = field(default_factory=list)
    relevant_documents: List[RetrievedChunk] = field(default_factory=list)


class LiveERPResponder:
    """Generates customer emails from live ERP data plus RAG recommendations."""

    def __init__(
        self,
        retriever: RAGRetriever,
        generator: RAGGenerator,
        erp_client: Optional[MetakockaClient] = None,
        sentiment: Optional[SentimentScorer] = None,
        error_log: Optional[SuppressedErrorLog] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.retriever = retriever
        self.generator = generator
        self.erp_client = erp_client
        self.sentiment = sentiment or KeywordSentimentScorer()
        self.error_log = error_log or SuppressedErrorLog()
        self._clock = clock

    async def generate_email_with_live_data(
        self,
        email: str,
        sender_email: str,
        organization_id: str,
        user_id: Optional[str] = None,
    ) -> LiveEmailResponse:
        live = await self.get_live_customer_data(sender_email, user_id, organization_id)
        sentiment = self.sentiment.score(email)

        query = email
        if live.customer and live.last_order_date:
            query += f" customer previous orders {live.customer.get('name', '')}"

        retrieval = await self.retriever.retrieve(
            query,
            organization_id,
            RetrievalOptions(
                source_types=[SourceType.PRODUCT, SourceType.DOCUMENT],
                limit=10,
                similarity_threshold=0.6,
            ),
        )
        products = [c for c in retrieval.chunks if c.source_type == SourceType.PRODUCT]
        documents = [c for c in retrieval.chunks if c.source_type == SourceType.DOCUMENT]

        upsell: List[UpsellCandidate] = []
        if sentiment >= 0:
            upsell = self.rank_upsell(products, live)[:3]
        else:
            logger.info("[Live ERP] Negative sentiment, skipping upsell recommendations")

        preamble = self.build_preamble(live, upsell)
        answer = await self.generator.query_with_generation(
            email,
            organization_id,
            QueryContext(user_id=user_id),
            preamble=preamble,
        )

        return LiveEmailResponse(
            response=answer.answer,
            confidence=answer.confidence,
            sentiment=sentiment,
            live_data=live,
            upsell_products=upsell,
            related_products=products[:5],
            relevant_documents=documents[:3],
        )

    async def get_live_customer_data(
        self,
        sender_email: str,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> LiveCustomerData:
        """Customer, orders and shipping facts straight from the ERP; empty when unavailable."""
        if self.erp_client is None:
            return LiveCustomerData()

        try:
            context: ERPContext = await asyncio.to_thread(self.erp_client.get_ai_context, user_id)
        except Exception as e:
            self.error_log.record("live_erp.context", e, organization_id=organization_id, user_id=user_id)
            return LiveCustomerData()

        target = sender_email.strip().lower()
        customer = next((c for c in context.customers if (c.get("email") or "").lower() == target), None)
        if customer is None:
            logger.info(f"[Live ERP] Customer not found for email: {sender_email}")
            return LiveCustomerData(available_products=context.products[:10])

        orders = [
            o for o in context.orders
            if o.get("customer_id") == customer["id"] or (o.get("customer_email") or "").lower() == target
        ]
        orders.sort(
            key=lambda o: parse_order_date(o.get("order_date")) or datetime.min.replace(tzinfo=timezone.utc),
            reverse=True,
        )
        recent = orders[:RECENT_ORDERS]

        return LiveCustomerData(
            customer=customer,
            total_orders=len(orders),
            last_order_date=parse_order_date(recent[0].get("order_date")) if recent else None,
            recent_orders=recent,
            shipping_status=[
                {
                    "order_number": o.get("order_number"),
                    "status": o.get("status"),
                    "tracking_number": o.get("tracking_number"),
                    "delivery_address": o.get("delivery_address"),
                }
                for o in recent
            ],
            available_products=context.products[:20],
        )

    def upsell_priority(self, chunk: RetrievedChunk, live: LiveCustomerData) -> float:
        priority = chunk.similarity * 100
        if live.total_orders > FREQUENT_CUSTOMER_ORDERS:
            priority += 20
        if live.last_order_date is not None:
            days = (self._clock() - live.last_order_date).days
            if days < RECENT_PURCHASE_DAYS:
                priority += 15
        return priority

    def rank_upsell(self, products: List[RetrievedChunk], live: LiveCustomerData) -> List[UpsellCandidate]:
        if live.customer is None or not products:
            return []
        candidates = [
            UpsellCandidate(
                source_id=c.source_id,
                title=c.title,
                similarity=c.similarity,
                priority=self.upsell_priority(c, live),
            )
            for c in products
        ]
        candidates.sort(key=lambda c: c.priority, reverse=True)
        return candidates

    @staticmethod
    def build_preamble(live: LiveCustomerData, upsell: List[UpsellCandidate]) -> str:
        """Live facts first, then recommended products."""
        lines = ["Customer Context (live ERP data):"]
        if live.customer:
            lines.append(f"- Customer: {live.customer.get('name')}")
            lines.append(f"- Total orders: {live.total_orders}")
            if live.last_order_date:
                lines.append(f"- Last order: {live.last_order_date.date().isoformat()}")
        else:
            lines.append("- Customer not found in ERP")

        if live.recent_orders:
            lines.append("")
            lines.append("Recent Orders:")
            for order in live.recent_orders[:2]:
                lines.append(
                    f"- Order {order.get('order_number')}: "
                    f"{order.get('total_amount')} {order.get('currency')} ({order.get('status')})"
                )

        if live.shipping_status:
            lines.append("")
            lines.append("Shipping Status:")
            for shipping in live.shipping_status:
                tracking = f", tracking {shipping['tracking_number']}" if shipping.get("tracking_number") else ""
                lines.append(f"- {shipping.get('order_number')}: {shipping.get('status')}{tracking}")

        if upsell:
            lines.append("")
            lines.append("Recommended Products:")
            for candidate in upsell[:2]:
                lines.append(f"- {candidate.title}")

        return "\n".join(lines)
