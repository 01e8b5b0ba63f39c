"""
Shopify Admin API client - order listing for the import stage.
Never expose access_token to frontend. Listing failures come back as
{"success": False, "error": ...} instead of raising, so the import stage can stop
its walk cleanly.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from app.config import settings
from app.services.http_client import get_json

logger = logging.getLogger(__name__)

# Only what the canonical order needs; keeps 250-order pages small
ORDER_FIELDS = (
    "id,name,email,phone,created_at,updated_at,total_price,current_total_price,subtotal_price,"
    "currency,financial_status,fulfillment_status,cancelled_at,payment_gateway_names,customer,shipping_address,"
    "billing_address,line_items"
)


@dataclass(frozen=True)
class ShopifyCredentials:
    shop_domain: str
    access_token: str


def normalize_shop_domain(shop_domain: str) -> str:
    shop = (shop_domain or "").lower().strip()
    shop = shop.removeprefix("https://").removeprefix("http://").rstrip("/")
    if not shop.endswith(".myshopify.com") and "." not in shop:
        shop = f"{shop}.myshopify.com"
    return shop


def _headers(access_token: str) -> dict:
    return {
        "X-Shopify-Access-Token": access_token,
        "Content-Type": "application/json",
    }


def _log_shopify_response(method: str, url: str, status: int, body_preview: str = "") -> None:
    """Log every Shopify API call for debugging. No sensitive data."""
    if status >= 400:
        logger.warning("Shopify API %s %s -> %s %s", method, url, status, body_preview[:200] if body_preview else "")
    else:
        logger.debug("Shopify API %s %s -> %s", method, url, status)


class ShopifyService:
    """Storefront client. Stateless apart from API version and an optional test transport."""

    def __init__(self, api_version: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_version = api_version or settings.SHOPIFY_API_VERSION
        self.transport = transport

    def _base_url(self, shop_domain: str) -> str:
        return f"https://{normalize_shop_domain(shop_domain)}/admin/api/{self.api_version}"

    async def list_orders(self, credentials: ShopifyCredentials, params: dict[str, Any]) -> dict:
        """
        GET /admin/api/{version}/orders.json
        params: limit, status, created_at_min, created_at_max, order (passed through).
        Returns {"success": True, "orders": [...]} or {"success": False, "error": "..."}.
        """
        url = f"{self._base_url(credentials.shop_domain)}/orders.json"
        query = {"status": "any", "fields": ORDER_FIELDS}
        query.update({k: v for k, v in params.items() if v is not None})
        try:
            data = await get_json(url, params=query, headers=_headers(credentials.access_token), transport=self.transport)
        except httpx.HTTPStatusError as e:
            _log_shopify_response("GET", url, e.response.status_code, e.response.text or "")
            return {"success": False, "error": f"Shopify HTTP {e.response.status_code}"}
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Shopify orders request failed for %s: %s", credentials.shop_domain, e)
            return {"success": False, "error": str(e) or e.__class__.__name__}
        _log_shopify_response("GET", url, 200)
        orders = data.get("orders") if isinstance(data, dict) else None
        if not isinstance(orders, list):
            return {"success": False, "error": "Malformed Shopify response: no orders list"}
        return {"success": True, "orders": orders}
