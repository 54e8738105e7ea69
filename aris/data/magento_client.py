"""
Magento Catalog Client
======================

Reads products from a Magento 2 store over its REST API.

Requests are authenticated with a bearer integration token and retried
on transport errors and 5xx responses with a linearly growing delay
(retry_delay * attempt).

Configuration:
    MAGENTO_BASE_URL: Store base URL (https://shop.example.com)
    MAGENTO_ACCESS_TOKEN: Integration access token
"""

import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from .config import MagentoConfig

logger = logging.getLogger(__name__)


class MagentoAPIError(Exception):
    """Magento API error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


def _custom_attribute(raw: Dict[str, Any], code: str) -> Optional[Any]:
    for attr in raw.get("custom_attributes") or []:
        if attr.get("attribute_code") == code:
            return attr.get("value")
    return None


def normalize_product(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Map a Magento product payload onto the catalog product shape."""
    stock = (raw.get("extension_attributes") or {}).get("stock_item") or {}
    category_ids = _custom_attribute(raw, "category_ids") or []
    return {
        "id": str(raw.get("id") or raw.get("sku") or ""),
        "sku": raw.get("sku"),
        "name": raw.get("name") or "",
        "price": raw.get("price"),
        "description": _custom_attribute(raw, "description") or _custom_attribute(raw, "short_description"),
        "url_key": _custom_attribute(raw, "url_key"),
        "category_ids": [str(c) for c in category_ids] if isinstance(category_ids, list) else [str(category_ids)],
        "in_stock": bool(stock.get("is_in_stock", raw.get("status") == 1)),
        "qty": stock.get("qty"),
    }


class MagentoClient:
    """
    Client for the Magento 2 REST API.

    One instance per store view; `store_code` selects the localized
    catalog (e.g. german_store).
    """

    def __init__(
        self,
        store_code: str = "default",
        config: Optional[MagentoConfig] = None,
        session: Optional[requests.Session] = None,
        sleep=time.sleep,
    ):
        self.config = config or MagentoConfig()
        if not self.config.is_configured:
            raise MagentoAPIError("Magento not configured. Set MAGENTO_BASE_URL and MAGENTO_ACCESS_TOKEN")
        self.store_code = store_code
        self.session = session or requests.Session()
        self._sleep = sleep

    def _request(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.config.base_url.rstrip('/')}/rest/{self.store_code}/V1/{path.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {self.config.access_token}",
            "Content-Type": "application/json",
        }

        last_error: Optional[Exception] = None
        for attempt in range(1, self.config.max_retries + 1):
            try:
                response = self.session.get(url, params=params, headers=headers, timeout=self.config.request_timeout)
            except requests.RequestException as e:
                last_error = e
            else:
                if response.status_code == 200:
                    return response.json()
                error = MagentoAPIError(f"HTTP {response.status_code}: {response.text[:200]}", response.status_code)
                # Client errors are not retried
                if response.status_code < 500:
                    raise error
                last_error = error

            if attempt < self.config.max_retries:
                logger.warning(f"[Magento] {path} attempt {attempt} failed: {last_error}; retrying")
                self._sleep(self.config.retry_delay * attempt)

        raise MagentoAPIError(f"Request to {path} failed after {self.config.max_retries} attempts: {last_error}")

    def list_products(self, max_pages: int = 50) -> List[Dict[str, Any]]:
        """All enabled products of the store view, paginated."""
        products: List[Dict[str, Any]] = []
        page = 1
        while page <= max_pages:
            params = {
                "searchCriteria[filter_groups][0][filters][0][field]": "status",
                "searchCriteria[filter_groups][0][filters][0][value]": "1",
                "searchCriteria[filter_groups][0][filters][0][condition_type]": "eq",
                "searchCriteria[pageSize]": str(self.config.page_size),
                "searchCriteria[currentPage]": str(page),
            }
            data = self._request("products", params)
            items = data.get("items") or []
            products.extend(normalize_product(item) for item in items)

            total = int(data.get("total_count") or 0)
            if not items or len(products) >= total:
                break
            page += 1

        logger.info(f"[Magento] Fetched {len(products)} products from store '{self.store_code}'")
        return products

    def get_product(self, sku: str) -> Dict[str, Any]:
        return normalize_product(self._request(f"products/{quote(sku, safe='')}"))
