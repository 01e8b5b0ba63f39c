"""
Shopify webhook receiver. Public endpoint (no session); HMAC verified against the
integration's webhook secret.
"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.http.requests.schemas import WebhookAck
from app.services.shopify_webhook_handler import (
    find_integration,
    process_order_webhook,
    verify_webhook_hmac,
    webhook_secret,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/shopify/orders", response_model=WebhookAck)
async def shopify_orders_webhook(request: Request, db: Session = Depends(get_db)):
    """Receive orders/* webhooks and upsert the order into the canonical store."""
    raw_body = await request.body()
    hmac_header = request.headers.get("X-Shopify-Hmac-Sha256")
    topic = (request.headers.get("X-Shopify-Topic") or "").strip().lower()
    shop_domain = (request.headers.get("X-Shopify-Shop-Domain") or "").strip().lower()
    if not shop_domain:
        logger.warning("Shopify webhook: missing X-Shopify-Shop-Domain")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing shop domain")

    integration = find_integration(db, shop_domain)
    if integration is None:
        logger.warning("Shopify webhook for unknown shop %s", shop_domain)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown shop")

    secret = webhook_secret(integration)
    if not secret:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Webhook secret not configured for this shop")
    if not verify_webhook_hmac(raw_body, hmac_header, secret):
        logger.warning("Shopify webhook: HMAC verification failed for shop=%s topic=%s", shop_domain, topic)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid HMAC")

    try:
        payload = json.loads(raw_body)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body is not JSON")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be a JSON object")

    try:
        result = process_order_webhook(db, integration, topic, payload)
    except ValueError as e:
        db.rollback()
        logger.warning("Shopify webhook %s for %s rejected: %s", topic, shop_domain, e)
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return {"ok": True, **result}
