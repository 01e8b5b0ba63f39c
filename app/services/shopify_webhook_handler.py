"""
Shopify order webhooks: HMAC verification and routing into the import upsert.
A webhook only refreshes one order early; the scheduled import remains the source of truth.
"""
import base64
import hmac
import hashlib
import logging
from typing import Optional

from cryptography.fernet import InvalidToken
from sqlalchemy.orm import Session

from app.models import IntegrationStatus, ShopifyIntegration
from app.services.credentials import decrypt_token
from app.services.order_import import OrderImporter
from app.services.shopify_service import normalize_shop_domain

logger = logging.getLogger(__name__)

ORDER_TOPICS = frozenset({
    "orders/create",
    "orders/updated",
    "orders/paid",
    "orders/fulfilled",
    "orders/partially_fulfilled",
    "orders/cancelled",
})


def verify_webhook_hmac(body: bytes, hmac_header: Optional[str], secret: Optional[str]) -> bool:
    """
    Verify X-Shopify-Hmac-Sha256: HMAC-SHA256(raw_body, secret) base64 == header.
    """
    if not secret or not hmac_header or not body:
        return False
    computed = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    computed_b64 = base64.b64encode(computed).decode("utf-8")
    return hmac.compare_digest(computed_b64, hmac_header.strip())


def find_integration(db: Session, shop_domain: str) -> Optional[ShopifyIntegration]:
    return (
        db.query(ShopifyIntegration)
        .filter(ShopifyIntegration.shop_domain == normalize_shop_domain(shop_domain))
        .first()
    )


def webhook_secret(integration: ShopifyIntegration) -> Optional[str]:
    if not integration.webhook_secret:
        return None
    try:
        return decrypt_token(integration.webhook_secret).strip() or None
    except InvalidToken:
        logger.warning("Webhook secret for %s cannot be decrypted", integration.shop_domain)
        return None


def process_order_webhook(db: Session, integration: ShopifyIntegration, topic: str, payload: dict) -> dict:
    """
    Upsert the order carried by an orders/* webhook for the integration's operation.
    Returns {"processed": bool, "created": bool, "reason"?}.
    """
    if topic not in ORDER_TOPICS:
        return {"processed": False, "created": False, "reason": f"topic {topic or '-'} ignored"}
    if integration.status != IntegrationStatus.ACTIVE:
        return {"processed": False, "created": False, "reason": "integration paused"}
    result = OrderImporter(db, storefront=None).process_shopify_order(integration.operation_id, payload)
    logger.info(
        "Shopify webhook %s for %s: order %s %s",
        topic, integration.shop_domain, payload.get("id"), "created" if result["created"] else "updated",
    )
    return {"processed": True, "created": result["created"]}
