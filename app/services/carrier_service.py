"""
European COD fulfillment/carrier platform client.
- Auth: POST api/login?email=&password= -> token, sent as Bearer; cached until shortly before it expires.
- Leads: GET api/leads?country=&page= (paged; an empty page ends the listing).
- Lead status: GET api/leads/details?leadNumber=
Failures raise CarrierAPIError; the match stage decides what that means for the tenant.
"""
import json
import logging
import time
from typing import Any, Optional

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.services.credentials import get_provider_credentials
from app.services.http_client import get_json, post_json

logger = logging.getLogger(__name__)

CARRIER_PROVIDER_ID = "carrier"


class CarrierAPIError(Exception):
    """Upstream carrier call failed (auth, network or non-2xx)."""


def _extract_leads(data: Any) -> list[dict]:
    """The leads endpoint has answered with a bare list, {"leads": [...]} and {"data": [...]}."""
    if isinstance(data, list):
        rows = data
    elif isinstance(data, dict):
        rows = data.get("leads")
        if rows is None:
            rows = data.get("data")
        if isinstance(rows, dict):
            rows = rows.get("data") or rows.get("leads")
    else:
        rows = None
    return [r for r in (rows or []) if isinstance(r, dict)]


class CarrierService:
    """Carrier API client for one set of credentials."""

    def __init__(
        self,
        email: str,
        password: str,
        api_url: Optional[str] = None,
        *,
        max_pages: Optional[int] = None,
        token_ttl_sec: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.email = (email or "").strip()
        self.password = password or ""
        base = (api_url or settings.CARRIER_API_URL).strip()
        self.api_url = base if base.endswith("/") else f"{base}/"
        self.max_pages = max_pages or settings.CARRIER_MAX_PAGES
        self.token_ttl_sec = token_ttl_sec or settings.CARRIER_TOKEN_TTL_SEC
        self.transport = transport
        self._token: Optional[tuple[str, float]] = None

    async def _get_auth_token(self) -> str:
        now = time.monotonic()
        if self._token is not None and self._token[1] > now:
            return self._token[0]
        try:
            data = await post_json(
                f"{self.api_url}api/login",
                params={"email": self.email, "password": self.password},
                timeout=15.0,
                transport=self.transport,
            )
        except (httpx.HTTPError, ValueError) as e:
            raise CarrierAPIError(f"Carrier authentication failed: {e}") from e
        token = data.get("token") if isinstance(data, dict) else None
        if not token:
            raise CarrierAPIError("Carrier authentication returned no token")
        self._token = (token, now + self.token_ttl_sec)
        return token

    async def _get(self, endpoint: str, params: Optional[dict] = None) -> Any:
        token = await self._get_auth_token()
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        try:
            return await get_json(f"{self.api_url}{endpoint}", params=params, headers=headers, transport=self.transport)
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 401:
                # Token revoked early; next call re-authenticates
                self._token = None
            raise CarrierAPIError(f"Carrier API {endpoint} -> HTTP {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise CarrierAPIError(f"Carrier API {endpoint} failed: {e}") from e

    async def fetch_leads_page(self, country: Optional[str] = None, page: int = 1) -> list[dict]:
        params: dict[str, Any] = {"page": page}
        if country:
            params["country"] = country
        return _extract_leads(await self._get("api/leads", params=params))

    async def list_leads(self, country: Optional[str] = None) -> list[dict]:
        """
        All leads for the (optional) country filter, walking pages until an empty one.
        Bounded by max_pages; a page identical to the previous one also stops the walk
        (the API ignores unknown page numbers on some accounts).
        """
        leads: list[dict] = []
        previous_first = None
        for page in range(1, self.max_pages + 1):
            page_leads = await self.fetch_leads_page(country, page)
            if not page_leads:
                break
            first = json.dumps(page_leads[0], sort_keys=True, default=str)
            if first == previous_first:
                logger.warning("Carrier leads page %s repeats page %s; stopping", page, page - 1)
                break
            previous_first = first
            leads.extend(page_leads)
        else:
            logger.warning("Carrier leads walk hit the %s page ceiling (country=%s)", self.max_pages, country)
        logger.info("Carrier leads: got %s lead(s) (country=%s)", len(leads), country or "any")
        return leads

    async def get_lead_status(self, lead_number: str) -> Optional[dict]:
        """Current status of one lead: {lead_number, status, tracking_number, delivery_date}."""
        if not lead_number:
            return None
        data = await self._get("api/leads/details", params={"leadNumber": lead_number})
        if not isinstance(data, dict):
            return None
        return {
            "lead_number": lead_number,
            "status": data.get("status_livrison") or data.get("status") or "unknown",
            "tracking_number": data.get("tracking_number") or data.get("tracking"),
            "delivery_date": data.get("delivery_date"),
            "raw": data,
        }


def get_operation_carrier_client(db: Session, operation_id: str) -> Optional[CarrierService]:
    """
    Carrier client for an operation: per-operation credentials first
    (provider_credentials, provider_id="carrier"), then CARRIER_EMAIL/CARRIER_PASSWORD.
    Returns None when neither is configured.
    """
    creds = get_provider_credentials(db, operation_id, CARRIER_PROVIDER_ID) or {}
    email = (creds.get("email") or settings.CARRIER_EMAIL or "").strip()
    password = creds.get("password") or settings.CARRIER_PASSWORD or ""
    if not email or not password:
        return None
    return CarrierService(email=email, password=password, api_url=creds.get("apiUrl"))
