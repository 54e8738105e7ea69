"""
Magento Multi-Language Adapter
==============================

Caches per-language Magento store catalogs in the knowledge base.

Every product carries `language` and `country` metadata so searches stay
inside one localized catalog. Replies to customer emails are built from
the detected language's catalog with canned, localized greetings.

Supported stores:
    de, sl, it, en  primary (priority 1)
    hr, fr, es      additional (priority 2)
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from ...data.config import MagentoConfig
from ...data.magento_client import MagentoClient
from ...logging_config import SuppressedErrorLog
from ..ingestion import RAGIngestion
from ..language import KeywordLanguageDetector, LanguageDetector
from ..models import BatchResult, ContentItem, IngestOptions, RetrievalOptions, SourceType, clean_metadata
from ..retriever import RAGRetriever
from .base import Record, SourceAdapter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LanguageStore:
    country: str
    currency: str
    store_code: str
    locale: str
    priority: int


LANGUAGE_STORES: Dict[str, LanguageStore] = {
    "de": LanguageStore("germany", "EUR", "german_store", "de_DE", 1),
    "sl": LanguageStore("slovenia", "EUR", "slovenian_store", "sl_SI", 1),
    "it": LanguageStore("italy", "EUR", "italian_store", "it_IT", 1),
    "en": LanguageStore("international", "EUR", "english_store", "en_US", 1),
    "hr": LanguageStore("croatia", "EUR", "croatian_store", "hr_HR", 2),
    "fr": LanguageStore("france", "EUR", "french_store", "fr_FR", 2),
    "es": LanguageStore("spain", "EUR", "spanish_store", "es_ES", 2),
}

FALLBACK_LANGUAGE = "en"

COUNTRY_LANGUAGES = {
    "italy": "it",
    "germany": "de",
    "slovenia": "sl",
    "croatia": "hr",
    "austria": "de",
}

GREETINGS = {
    "de": "Vielen Dank für Ihre Anfrage. Hier sind die Produkte, die für Sie interessant sein könnten:",
    "sl": "Hvala za vaše povpraševanje. Tukaj so izdelki, ki vas lahko zanimajo:",
    "it": "Grazie per la sua richiesta. Ecco i prodotti che potrebbero interessarla:",
    "en": "Thank you for your inquiry. Here are the products that might interest you:",
    "hr": "Hvala na vašem upitu. Evo proizvoda koji vas mogu zanimati:",
    "fr": "Merci pour votre demande. Voici les produits qui pourraient vous intéresser:",
    "es": "Gracias por su consulta. Aquí están los productos que podrían interesarle:",
}

CLOSINGS = {
    "de": "Mit freundlichen Grüßen,\nIhr {team} Team",
    "sl": "Lep pozdrav,\nEkipa {team}",
    "it": "Cordiali saluti,\nIl team {team}",
    "en": "Best regards,\n{team} Team",
    "hr": "S poštovanjem,\n{team} tim",
    "fr": "Cordialement,\nÉquipe {team}",
    "es": "Saludos cordiales,\nEquipo {team}",
}

DEFAULT_REPLY = "Thank you for your inquiry. We will get back to you soon."


def language_from_country(country: Optional[str]) -> str:
    return COUNTRY_LANGUAGES.get((country or "").strip().lower(), FALLBACK_LANGUAGE)


def build_localized_reply(products: List[Dict[str, Any]], language: str, team_name: str = "Sales") -> str:
    """Greeting, up to three product lines, closing."""
    reply = GREETINGS.get(language, GREETINGS[FALLBACK_LANGUAGE])

    if products:
        lines = []
        for i, product in enumerate(products[:3], 1):
            lines.append(f"{i}. {product['name']} - {product['price']} {product['currency']}")
            if product.get("url"):
                lines.append(f"   {product['url']}")
        reply += "\n\n" + "\n".join(lines)

    closing = CLOSINGS.get(language, CLOSINGS[FALLBACK_LANGUAGE])
    return reply + "\n\n" + closing.format(team=team_name)


def _price(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class MagentoCatalogAdapter(SourceAdapter):
    """Localized Magento catalogs -> knowledge base."""

    source_type = SourceType.MAGENTO
    component = "Magento RAG"
    chunk_size = 600
    chunk_overlap = 100
    skip_if_exists = False

    def __init__(
        self,
        ingestion: RAGIngestion,
        retriever: RAGRetriever,
        config: Optional[MagentoConfig] = None,
        detector: Optional[LanguageDetector] = None,
        team_name: str = "Sales",
        record_delay: float = 0.05,
        error_log: Optional[SuppressedErrorLog] = None,
    ):
        super().__init__(ingestion, record_delay, error_log)
        self.retriever = retriever
        self.config = config
        self.detector = detector or KeywordLanguageDetector(supported=LANGUAGE_STORES, default=FALLBACK_LANGUAGE)
        self.team_name = team_name

    def format_record(self, record: Record) -> ContentItem:
        language = record.get("language", FALLBACK_LANGUAGE)
        return self.format_product(record, language, LANGUAGE_STORES[language])

    def format_product(self, product: Record, language: str, store: LanguageStore) -> ContentItem:
        sections = [f"Product: {product.get('name')}"]
        if product.get("sku"):
            sections.append(f"SKU: {product['sku']}")
        if product.get("description"):
            sections.append(f"Description: {product['description']}")
        if product.get("price"):
            sections.append(f"Price: {product['price']} {store.currency}")
        category = product.get("category") or next(iter(product.get("category_ids") or []), None)
        if category:
            sections.append(f"Category: {category}")
        attributes = product.get("attributes")
        if isinstance(attributes, dict) and attributes:
            sections.append("Specifications:\n" + "\n".join(f"{k}: {v}" for k, v in attributes.items()))

        product_url = product.get("url")
        if not product_url and product.get("url_key") and self.config and self.config.base_url:
            product_url = f"{self.config.base_url.rstrip('/')}/{product['url_key']}.html"

        price = _price(product.get("price"))
        return ContentItem(
            title=product.get("name") or f"Product {product.get('id')}",
            content="\n\n".join(sections),
            source_type=SourceType.MAGENTO,
            # Same Magento id exists once per store view
            source_id=f"{language}:{product.get('id')}",
            metadata=clean_metadata({
                "language": language,
                "country": store.country,
                "currency": store.currency,
                "locale": store.locale,
                "store_code": store.store_code,
                "product_url": product_url,
                "image_url": product.get("image_url"),
                "price": price if price is None or price >= 0 else None,
                "category": str(category) if category is not None else None,
                "sku": product.get("sku"),
                "last_synced": datetime.now(timezone.utc),
            }),
        )

    # =========================================================================
    # SYNC
    # =========================================================================

    async def sync_products_by_language(
        self,
        organization_id: str,
        language: str,
        client: Optional[MagentoClient] = None,
    ) -> BatchResult:
        """Fetch one store view's catalog and ingest it under the language namespace."""
        store = LANGUAGE_STORES.get(language)
        if store is None:
            raise ValueError(f"Unsupported language: {language}")

        logger.info(f"[{self.component}] Syncing products for language: {language}")
        client = client or MagentoClient(store_code=store.store_code, config=self.config)

        result = BatchResult()
        try:
            products = await asyncio.to_thread(client.list_products)
        except Exception as e:
            logger.error(f"[{self.component}] Sync failed for {language}: {e}")
            result.errors.append(f"Sync failed: {e}")
            return result

        result = await self.run_batch(
            organization_id,
            products,
            IngestOptions(chunk_size=self.chunk_size, chunk_overlap=self.chunk_overlap, skip_if_exists=False),
            formatter=lambda product: self.format_product(product, language, store),
        )
        result.details["language"] = language
        logger.info(
            f"[{self.component}] Sync completed for {language}: {result.successful}/{result.processed} successful"
        )
        return result

    # =========================================================================
    # SEARCH
    # =========================================================================

    async def search_products_by_language(
        self,
        query: str,
        organization_id: str,
        language: str,
        limit: int = 10,
        similarity_threshold: float = 0.6,
        price_range: Optional[Tuple[float, float]] = None,
        category: Optional[str] = None,
    ) -> Dict[str, Any]:
        if language not in LANGUAGE_STORES:
            logger.warning(f"[{self.component}] Unsupported language {language}, falling back to English")
            language = FALLBACK_LANGUAGE
        store = LANGUAGE_STORES[language]

        result = await self.retriever.retrieve(
            query,
            organization_id,
            RetrievalOptions(
                source_types=[SourceType.MAGENTO],
                limit=limit,
                similarity_threshold=similarity_threshold,
                metadata_filters={"language": language, "country": store.country},
            ),
        )

        products = []
        for chunk in result.chunks:
            price = _price(chunk.metadata.get("price"))
            if price_range and price is not None and not (price_range[0] <= price <= price_range[1]):
                continue
            if category and chunk.metadata.get("category") != category:
                continue
            products.append({
                "id": chunk.source_id or chunk.id,
                "name": chunk.title,
                "description": chunk.content[:200],
                "price": price or 0.0,
                "currency": chunk.metadata.get("currency") or store.currency,
                "url": chunk.metadata.get("product_url") or "",
                "image_url": chunk.metadata.get("image_url") or "",
                "category": chunk.metadata.get("category") or "",
                "similarity": chunk.similarity,
                "language": chunk.metadata.get("language") or language,
                "country": chunk.metadata.get("country") or store.country,
            })

        return {
            "products": products,
            "language": language,
            "country": store.country,
            "total_found": len(products),
        }

    # =========================================================================
    # LANGUAGE-AWARE REPLIES
    # =========================================================================

    def detect_language(self, text: str) -> str:
        return self.detector.detect(text)

    def language_from_country(self, country: Optional[str]) -> str:
        return language_from_country(country)

    def build_localized_reply(self, products: List[Dict[str, Any]], language: str) -> str:
        return build_localized_reply(products, language, self.team_name)

    async def generate_language_aware_recommendations(
        self,
        email: str,
        organization_id: str,
        customer_country: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            language = (
                self.language_from_country(customer_country) if customer_country else self.detect_language(email)
            )
            logger.info(f"[{self.component}] Detected language: {language}")

            search = await self.search_products_by_language(email, organization_id, language, limit=5)
            return {
                "language": search["language"],
                "country": search["country"],
                "recommendations": search["products"],
                "email_response": self.build_localized_reply(search["products"], search["language"]),
            }
        except Exception as e:
            logger.error(f"[{self.component}] Language-aware recommendations failed: {e}")
            return {
                "language": FALLBACK_LANGUAGE,
                "country": "unknown",
                "recommendations": [],
                "email_response": DEFAULT_REPLY,
            }
