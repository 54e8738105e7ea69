"""
Metakocka ERP Client
====================

Thin client for the Metakocka e-shop JSON API.

Every call is a POST of a JSON body to <api_url><endpoint>, with the
tenant's secret_key and company_id added to the payload. Metakocka
reports failures in-band through `opr_code` ("0" = success).

Configuration:
    METAKOCKA_API_URL: API base (default: https://main.metakocka.si/rest/eshop/v1/json/)
    METAKOCKA_SECRET_KEY: API secret key
    METAKOCKA_COMPANY_ID: Company identifier
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from .config import MetakockaConfig

logger = logging.getLogger(__name__)


class MetakockaAPIError(Exception):
    """Base exception for Metakocka API errors."""

    def __init__(self, message: str, opr_code: Optional[str] = None, response: Optional[Dict] = None):
        self.message = message
        self.opr_code = opr_code
        self.response = response
        super().__init__(self.message)


class MetakockaAuthError(MetakockaAPIError):
    """Invalid secret key or company id (opr_code 1)."""
    pass


class MetakockaValidationError(MetakockaAPIError):
    """Rejected request payload (opr_code 2 or >= 100)."""
    pass


@dataclass
class ERPContext:
    """Normalized ERP snapshot used as AI context."""
    products: List[Dict[str, Any]] = field(default_factory=list)
    customers: List[Dict[str, Any]] = field(default_factory=list)
    orders: List[Dict[str, Any]] = field(default_factory=list)


def _as_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def normalize_product(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Map a product_list row onto the ERP product shape."""
    return {
        "id": str(raw.get("mk_id") or raw.get("id") or ""),
        "name": raw.get("name") or raw.get("name_desc") or "",
        "code": raw.get("code"),
        "description": raw.get("name_desc") or raw.get("description"),
        "category": raw.get("product_group") or raw.get("category"),
        "price": _as_float(raw.get("sales_price") or raw.get("price")),
        "currency": raw.get("currency_code") or raw.get("currency") or "EUR",
        "stock_quantity": _as_float(raw.get("amount_available") or raw.get("stock")),
        "unit": raw.get("unit"),
    }


def normalize_customer(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Map a partner_list row onto the ERP customer shape."""
    contact = raw.get("partner_contact") or {}
    if isinstance(contact, list):
        contact = contact[0] if contact else {}
    address_parts = [raw.get("street"), raw.get("post_number"), raw.get("place"), raw.get("country")]
    address = ", ".join(str(p) for p in address_parts if p)
    return {
        "id": str(raw.get("mk_id") or raw.get("id") or ""),
        "name": raw.get("customer") or raw.get("name") or "",
        "code": raw.get("count_code") or raw.get("code"),
        "email": contact.get("email") or raw.get("email"),
        "phone": contact.get("phone") or raw.get("phone"),
        "address": address or None,
        "tax_number": raw.get("vat_id_number") or raw.get("tax_id_number"),
        "notes": raw.get("notes"),
        "tags": raw.get("tags") or [],
    }


def normalize_order(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Map a list_sales_order row onto the ERP order shape."""
    partner = raw.get("partner") or {}
    items = [
        {
            "product_name": item.get("name") or item.get("code") or "",
            "quantity": _as_float(item.get("amount")) or 0,
            "price": _as_float(item.get("price")),
        }
        for item in raw.get("product_list") or []
    ]
    delivery = raw.get("receiver") or {}
    delivery_address = ", ".join(
        str(p) for p in (delivery.get("street"), delivery.get("post_number"), delivery.get("place")) if p
    )
    return {
        "id": str(raw.get("mk_id") or raw.get("id") or ""),
        "order_number": raw.get("count_code") or raw.get("doc_number") or "",
        "customer_id": str(partner.get("mk_id") or "") or None,
        "customer_name": partner.get("customer") or raw.get("customer_name"),
        "customer_email": (partner.get("partner_contact") or {}).get("email") if isinstance(partner.get("partner_contact"), dict) else None,
        "order_date": raw.get("doc_date"),
        "total_amount": _as_float(raw.get("sum_all") or raw.get("total_amount")),
        "currency": raw.get("currency_code") or "EUR",
        "status": raw.get("status_desc") or raw.get("status"),
        "items": items,
        "notes": raw.get("notes"),
        "delivery_address": delivery_address or None,
        "tracking_number": raw.get("tracking_number"),
    }


class MetakockaClient:
    """
    Client for the Metakocka REST/JSON API.

    Blocking; async callers run it through asyncio.to_thread.
    """

    def __init__(self, config: Optional[MetakockaConfig] = None, session: Optional[requests.Session] = None):
        self.config = config or MetakockaConfig()
        if not self.config.is_configured:
            raise MetakockaAPIError(
                "Metakocka credentials not configured. "
                "Set METAKOCKA_SECRET_KEY and METAKOCKA_COMPANY_ID"
            )
        self.session = session or requests.Session()
        self._requests_made = 0

    def request(self, endpoint: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """POST to an endpoint and return the decoded body, raising on opr_code != "0"."""
        body = dict(payload or {})
        body["secret_key"] = self.config.secret_key
        body["company_id"] = self.config.company_id

        url = f"{self.config.api_url.rstrip('/')}/{endpoint}"
        try:
            response = self.session.post(url, json=body, timeout=self.config.request_timeout)
            self._requests_made += 1
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise MetakockaAPIError(f"Request to {endpoint} failed: {e}")
        except ValueError as e:
            raise MetakockaAPIError(f"Invalid JSON from {endpoint}: {e}")

        opr_code = str(data.get("opr_code", "0"))
        if opr_code != "0":
            message = data.get("opr_desc_app") or data.get("opr_desc") or f"Metakocka error {opr_code}"
            if opr_code == "1":
                raise MetakockaAuthError(message, opr_code, data)
            if opr_code == "2" or (opr_code.isdigit() and int(opr_code) >= 100):
                raise MetakockaValidationError(message, opr_code, data)
            raise MetakockaAPIError(message, opr_code, data)

        return data

    def list_products(self) -> List[Dict[str, Any]]:
        data = self.request("product_list")
        return [normalize_product(p) for p in data.get("product_list") or []]

    def list_partners(self) -> List[Dict[str, Any]]:
        data = self.request("partner_list")
        return [normalize_customer(p) for p in data.get("partner_list") or []]

    def list_sales_orders(self, limit: int = 100) -> List[Dict[str, Any]]:
        data = self.request("list_sales_order", {"limit": str(limit)})
        rows = data.get("sales_order_list") or data.get("list") or []
        return [normalize_order(o) for o in rows]

    def get_ai_context(self, user_id: Optional[str] = None) -> ERPContext:
        """Products, customers and recent orders for AI context building."""
        context = ERPContext(
            products=self.list_products(),
            customers=self.list_partners(),
            orders=self.list_sales_orders(),
        )
        logger.info(
            f"[Metakocka] AI context for user {user_id or '-'}: "
            f"{len(context.products)} products, {len(context.customers)} customers, "
            f"{len(context.orders)} orders"
        )
        return context

    def find_customer_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        """First partner whose contact email matches (case-insensitive)."""
        target = email.strip().lower()
        for customer in self.list_partners():
            if (customer.get("email") or "").lower() == target:
                return customer
        return None

    def list_orders_for_customer(self, customer_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        return [o for o in self.list_sales_orders(limit=limit) if o.get("customer_id") == customer_id]

    @property
    def requests_made(self) -> int:
        return self._requests_made
