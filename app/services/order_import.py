"""
Import stage: Shopify orders -> canonical orders table.

Walks the storefront order list forward in fixed creation-date windows from a
historical floor to now, upserting each order by (data_source, source_order_id).
Not incremental: every run re-walks from the floor and relies on the upsert being
idempotent. Carrier-match fields are never touched here.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterator, Optional

from sqlalchemy.orm import Session

from app.config import settings as default_settings
from app.models import (
    DataSource,
    IntegrationStatus,
    Order,
    OrderStatus,
    ShopifyIntegration,
    utcnow,
)
from app.services.credentials import decrypt_token
from app.services.shopify_service import ShopifyCredentials
from app.services.status_mapping import map_source_fulfillment_status, map_source_payment_status

logger = logging.getLogger(__name__)

NAMELESS_CUSTOMER = "Cliente sem nome"


def format_shopify_datetime(value: datetime) -> str:
    """Naive-UTC datetime -> ISO 8601 with Z, as the Admin API expects."""
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_source_datetime(value: Optional[str]) -> Optional[datetime]:
    """Shopify timestamps carry an offset; store them as naive UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class DateWindowCursor:
    """
    Creation-date windows from floor to until, plus a budget of page requests.
    The budget is shared by all windows; once spent, the walk must stop even if
    a window never converges.
    """

    def __init__(self, floor: datetime, until: datetime, window: timedelta, max_pages: int):
        if window <= timedelta(0):
            raise ValueError("window must be positive")
        self.floor = floor
        self.until = until
        self.window = window
        self.max_pages = max_pages
        self.pages_requested = 0

    @property
    def total_windows(self) -> int:
        if self.until <= self.floor:
            return 0
        span = self.until - self.floor
        return -(-span // self.window)

    def windows(self) -> Iterator[tuple[datetime, datetime]]:
        start = self.floor
        while start < self.until:
            end = min(start + self.window, self.until)
            yield start, end
            start = end

    def take_page(self) -> bool:
        """Reserve one page request. False once the ceiling is reached."""
        if self.pages_requested >= self.max_pages:
            return False
        self.pages_requested += 1
        return True


@dataclass
class ImportProgress:
    is_running: bool = False
    current_step: str = ""
    current_window: int = 0
    total_windows: int = 0
    current_page: int = 0
    processed_orders: int = 0
    new_orders: int = 0
    updated_orders: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        percentage = 0
        if self.total_windows:
            percentage = round(100 * self.current_window / self.total_windows)
        if self.finished_at and not self.error:
            percentage = 100
        return {
            "isRunning": self.is_running,
            "currentStep": self.current_step,
            "currentWindow": self.current_window,
            "totalWindows": self.total_windows,
            "currentPage": self.current_page,
            "processedOrders": self.processed_orders,
            "newOrders": self.new_orders,
            "updatedOrders": self.updated_orders,
            "percentage": percentage,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
        }


@dataclass
class SyncProgressTracker:
    """In-memory import progress per operation, read by the admin progress endpoint."""

    _progress: dict[str, ImportProgress] = field(default_factory=dict)

    def start(self, operation_id: str, total_windows: int) -> ImportProgress:
        progress = ImportProgress(
            is_running=True,
            current_step="Importing Shopify orders",
            total_windows=total_windows,
            started_at=utcnow(),
        )
        self._progress[operation_id] = progress
        return progress

    def get(self, operation_id: str) -> Optional[ImportProgress]:
        return self._progress.get(operation_id)

    def finish(self, operation_id: str, error: Optional[str] = None) -> None:
        progress = self._progress.get(operation_id)
        if progress is None:
            return
        progress.is_running = False
        progress.current_step = "Failed" if error else "Done"
        progress.error = error
        progress.finished_at = utcnow()

    def snapshot(self, operation_id: str) -> dict:
        progress = self._progress.get(operation_id)
        return progress.to_dict() if progress else ImportProgress().to_dict()


def get_customer_name(payload: dict) -> str:
    """Shipping name -> billing name -> customer profile name -> email -> placeholder."""
    for key in ("shipping_address", "billing_address", "customer"):
        block = payload.get(key) or {}
        name = f"{block.get('first_name') or ''} {block.get('last_name') or ''}".strip()
        if not name:
            name = (block.get("name") or "").strip() if key != "customer" else ""
        if name:
            return name
    email = payload.get("email") or (payload.get("customer") or {}).get("email")
    return email or NAMELESS_CUSTOMER


def _customer_phone(payload: dict) -> Optional[str]:
    for key in ("shipping_address", "billing_address", "customer"):
        phone = (payload.get(key) or {}).get("phone")
        if phone:
            return phone
    return payload.get("phone") or None


def _payment_method(payload: dict) -> str:
    gateways = [str(g).lower() for g in payload.get("payment_gateway_names") or []]
    if not gateways or any("cash" in g or "cod" in g or "manual" in g for g in gateways):
        return "cod"
    return gateways[0]


def _money(value: Any) -> Decimal:
    try:
        return Decimal(str(value if value not in (None, "") else 0)).quantize(Decimal("0.01"))
    except InvalidOperation as e:
        raise ValueError(f"invalid amount {value!r}") from e


def build_order_data(payload: dict) -> dict:
    """
    Source-derived fields of the canonical order for one Shopify order payload.
    Raises ValueError when the payload cannot be mapped (missing id, bad amount).
    """
    source_order_id = payload.get("id")
    if source_order_id in (None, ""):
        raise ValueError("Shopify order without id")
    address = payload.get("shipping_address") or payload.get("billing_address") or {}
    street = " ".join(p for p in (address.get("address1"), address.get("address2")) if p) or None

    status = map_source_fulfillment_status(payload.get("fulfillment_status"))
    if payload.get("cancelled_at"):
        status = OrderStatus.CANCELLED

    products = [
        {
            "sku": item.get("sku") or "",
            "title": item.get("title") or item.get("name") or "",
            "quantity": int(item.get("quantity") or 0),
            "price": str(_money(item.get("price"))),
            "variant_id": item.get("variant_id"),
        }
        for item in payload.get("line_items") or []
    ]

    return {
        "source_order_id": str(source_order_id),
        "source_order_number": payload.get("name") or (str(payload["order_number"]) if payload.get("order_number") else None),
        "customer_name": get_customer_name(payload),
        "customer_phone": _customer_phone(payload),
        "customer_email": payload.get("email") or (payload.get("customer") or {}).get("email"),
        "customer_address": street,
        "customer_city": address.get("city"),
        "customer_state": address.get("province"),
        "customer_country": address.get("country_code") or address.get("country"),
        "customer_zip": address.get("zip"),
        "total": _money(payload.get("current_total_price") or payload.get("total_price")),
        "currency": payload.get("currency"),
        "payment_status": map_source_payment_status(payload.get("financial_status")),
        "payment_method": _payment_method(payload),
        "products": products,
        "status": status,
        "order_date": parse_source_datetime(payload.get("created_at")),
        "raw_source_data": payload,
    }


class OrderImporter:
    """Import stage for one database session. storefront: anything with ShopifyService.list_orders."""

    def __init__(
        self,
        db: Session,
        storefront,
        settings=None,
        progress: Optional[SyncProgressTracker] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.storefront = storefront
        self.settings = settings or default_settings
        self.progress = progress or SyncProgressTracker()
        self.clock = clock

    def get_integration(self, operation_id: str) -> Optional[ShopifyIntegration]:
        return (
            self.db.query(ShopifyIntegration)
            .filter(
                ShopifyIntegration.operation_id == operation_id,
                ShopifyIntegration.status == IntegrationStatus.ACTIVE,
            )
            .first()
        )

    def process_shopify_order(self, operation_id: str, payload: dict) -> dict:
        """
        Upsert one Shopify order and commit. Returns {"created": bool}.
        Existing rows get every source-derived field overwritten except order_date;
        status is left alone once the carrier has claimed the order or it is settled.
        """
        data = build_order_data(payload)
        now = self.clock()
        existing = (
            self.db.query(Order)
            .filter(
                Order.data_source == DataSource.STOREFRONT,
                Order.source_order_id == data["source_order_id"],
            )
            .first()
        )
        if existing is None:
            order = Order(
                id=Order.build_id(DataSource.STOREFRONT, data["source_order_id"]),
                operation_id=operation_id,
                data_source=DataSource.STOREFRONT,
                carrier_imported=False,
                created_at=now,
                updated_at=now,
                **data,
            )
            self.db.add(order)
            self.db.commit()
            return {"created": True}

        if existing.operation_id != operation_id:
            logger.warning(
                "Shopify order %s belongs to operation %s, not %s; updating in place",
                data["source_order_id"], existing.operation_id, operation_id,
            )
        keep_status = bool(existing.carrier_imported) or existing.is_settled
        for key, value in data.items():
            if key in ("source_order_id", "order_date"):
                continue
            if key == "status" and keep_status:
                continue
            setattr(existing, key, value)
        if existing.order_date is None:
            existing.order_date = data["order_date"]
        existing.touch(now)
        self.db.commit()
        return {"created": False}

    async def import_orders(self, operation_id: str) -> dict:
        """
        Walk the operation's Shopify orders window by window.
        Returns {"imported", "updated", "failed", "pages"} and "error" when the walk stopped early.
        """
        stats = {"imported": 0, "updated": 0, "failed": 0, "pages": 0}
        integration = self.get_integration(operation_id)
        if integration is None:
            logger.info("Operation %s has no active Shopify integration; import skipped", operation_id)
            stats["error"] = "No active Shopify integration"
            return stats

        credentials = ShopifyCredentials(
            shop_domain=integration.shop_domain,
            access_token=decrypt_token(integration.access_token),
        )
        now = self.clock()
        floor = now - timedelta(days=self.settings.IMPORT_HISTORY_DAYS)
        if integration.integration_started_at and integration.integration_started_at > floor:
            floor = integration.integration_started_at
        cursor = DateWindowCursor(
            floor=floor,
            until=now,
            window=timedelta(days=self.settings.IMPORT_WINDOW_DAYS),
            max_pages=self.settings.IMPORT_MAX_PAGES,
        )
        progress = self.progress.start(operation_id, cursor.total_windows)
        page_limit = self.settings.IMPORT_PAGE_LIMIT
        logger.info(
            "Import for operation %s (%s): %s window(s) from %s",
            operation_id, integration.shop_domain, cursor.total_windows, floor.date(),
        )

        error = await self._walk(operation_id, credentials, cursor, page_limit, stats, progress)
        if error:
            stats["error"] = error
        else:
            integration.last_synced_at = self.clock()
            self.db.commit()
        stats["pages"] = cursor.pages_requested
        self.progress.finish(operation_id, error)
        logger.info(
            "Import for operation %s done: %s imported, %s updated, %s failed, %s page(s)%s",
            operation_id, stats["imported"], stats["updated"], stats["failed"], stats["pages"],
            f" (stopped: {error})" if error else "",
        )
        return stats

    async def _walk(self, operation_id, credentials, cursor, page_limit, stats, progress) -> Optional[str]:
        # created_at_min is inclusive, so the last order of a full page comes back on the next one
        seen: set[str] = set()
        for index, (window_start, window_end) in enumerate(cursor.windows(), start=1):
            progress.current_window = index
            created_at_min = format_shopify_datetime(window_start)
            last_seen = None
            while True:
                if not cursor.take_page():
                    logger.warning("Import for operation %s hit the %s page ceiling", operation_id, cursor.max_pages)
                    return f"Page ceiling of {cursor.max_pages} reached"
                progress.current_page = cursor.pages_requested
                result = await self.storefront.list_orders(
                    credentials,
                    {
                        "limit": page_limit,
                        "created_at_min": created_at_min,
                        "created_at_max": format_shopify_datetime(window_end),
                        "order": "created_at asc",
                    },
                )
                if not result.get("success"):
                    logger.error(
                        "Import for operation %s: page fetch failed in window %s..%s: %s",
                        operation_id, window_start.date(), window_end.date(), result.get("error"),
                    )
                    return result.get("error") or "Shopify request failed"

                orders = result.get("orders") or []
                for payload in orders:
                    source_id = payload.get("id")
                    if source_id is not None:
                        if str(source_id) in seen:
                            continue
                        seen.add(str(source_id))
                    self._import_one(operation_id, payload, stats, progress)

                if len(orders) < page_limit:
                    break
                newest = orders[-1].get("created_at")
                if not newest or newest == last_seen:
                    # Window did not advance; more than page_limit orders share one timestamp
                    logger.warning(
                        "Import for operation %s: window %s..%s stalled at %s",
                        operation_id, window_start.date(), window_end.date(), newest,
                    )
                    break
                last_seen = newest
                created_at_min = newest
        return None

    def _import_one(self, operation_id: str, payload: dict, stats: dict, progress: ImportProgress) -> None:
        try:
            result = self.process_shopify_order(operation_id, payload)
        except Exception as e:
            self.db.rollback()
            stats["failed"] += 1
            logger.warning("Import for operation %s: order %s skipped: %s", operation_id, payload.get("id"), e)
            return
        progress.processed_orders += 1
        if result["created"]:
            stats["imported"] += 1
            progress.new_orders += 1
        else:
            stats["updated"] += 1
            progress.updated_orders += 1
