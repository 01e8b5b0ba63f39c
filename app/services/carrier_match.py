"""
Match stage and carrier status refresh.

Carrier leads carry no storefront reference, so unmatched storefront orders are
linked to leads by customer identity (app.services.identity_matcher). Once
matched, the carrier is authoritative for the order's status and tracking.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings as default_settings
from app.models import DataSource, Order, OrderStatus, TERMINAL_STATUSES, utcnow
from app.services.carrier_service import CarrierAPIError, get_operation_carrier_client
from app.services.identity_matcher import MatchStrategy, find_match, lead_id, lead_status, lead_tracking
from app.services.status_mapping import map_carrier_status

logger = logging.getLogger(__name__)

CarrierFactory = Callable[[Session, str], object]


class CarrierMatcher:
    def __init__(
        self,
        db: Session,
        carrier_factory: Optional[CarrierFactory] = None,
        settings=None,
        strategy: Optional[MatchStrategy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.carrier_factory = carrier_factory or get_operation_carrier_client
        self.settings = settings or default_settings
        self.strategy = strategy
        self.clock = clock

    def unmatched_orders(self, operation_id: str) -> list[Order]:
        """Storefront orders not yet linked to a lead and not settled."""
        return (
            self.db.query(Order)
            .filter(
                Order.operation_id == operation_id,
                Order.data_source == DataSource.STOREFRONT,
                Order.carrier_imported.is_(False),
                Order.status.notin_(list(TERMINAL_STATUSES)),
            )
            .order_by(Order.order_date.asc(), Order.id.asc())
            .all()
        )

    def matched_open_orders(self, operation_id: str) -> list[Order]:
        return (
            self.db.query(Order)
            .filter(
                Order.operation_id == operation_id,
                Order.carrier_imported.is_(True),
                Order.carrier_order_id.isnot(None),
                Order.status.notin_(list(TERMINAL_STATUSES)),
            )
            .order_by(Order.id.asc())
            .all()
        )

    async def fetch_leads(self, client) -> list[dict]:
        """Unfiltered listing first, then each configured country spelling until one returns leads."""
        leads = await client.list_leads()
        if leads:
            return leads
        for country in self.settings.CARRIER_COUNTRY_FILTERS:
            leads = await client.list_leads(country)
            if leads:
                logger.info("Carrier leads found with country filter %r", country)
                return leads
        return []

    def apply_match(self, order: Order, lead: dict, now: datetime) -> bool:
        """Write the lead's carrier data onto the order. False when the row already holds exactly this data."""
        carrier_order_id = lead_id(lead)
        tracking = lead_tracking(lead) or order.tracking_number
        status = map_carrier_status(lead_status(lead))
        if (
            order.carrier_imported
            and order.carrier_order_id == carrier_order_id
            and order.tracking_number == tracking
            and order.status is not None
            and OrderStatus(order.status) == status
            and order.provider_data == lead
        ):
            return False
        order.carrier_imported = True
        order.carrier_matched_at = now
        order.carrier_order_id = carrier_order_id
        order.tracking_number = tracking
        order.provider_data = lead
        order.status = status
        order.last_status_update = now
        order.touch(now)
        return True

    def _write_batch(self, operation_id: str, batch: list[tuple[Order, dict]]) -> int:
        """One commit per batch; a failed batch is replayed row by row so one bad row loses only itself."""
        now = self.clock()
        written = sum(1 for order, lead in batch if self.apply_match(order, lead, now))
        try:
            self.db.commit()
            return written
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning(
                "Match for operation %s: batch of %s failed to save, retrying one by one: %s",
                operation_id, len(batch), e,
            )

        written = 0
        for order, lead in batch:
            order_id = order.id
            try:
                changed = self.apply_match(order, lead, now)
                self.db.commit()
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error("Match for operation %s: order %s failed to save: %s", operation_id, order_id, e)
                continue
            if changed:
                written += 1
        return written

    async def match_with_carrier(self, operation_id: str) -> dict:
        """Returns {"matched", "candidates", "leads"}, plus "error" when the carrier could not be read."""
        candidates = self.unmatched_orders(operation_id)
        if not candidates:
            logger.info("Match for operation %s: no unmatched orders", operation_id)
            return {"matched": 0, "candidates": 0, "leads": 0}

        client = self.carrier_factory(self.db, operation_id)
        if client is None:
            logger.info("Match for operation %s: no carrier credentials configured", operation_id)
            return {"matched": 0, "candidates": len(candidates), "leads": 0, "error": "No carrier credentials"}

        try:
            leads = await self.fetch_leads(client)
        except CarrierAPIError as e:
            logger.error("Match for operation %s: carrier lead fetch failed: %s", operation_id, e)
            return {"matched": 0, "candidates": len(candidates), "leads": 0, "error": str(e)}

        # A matched order must carry the lead number, or the status refresh can never find it again
        usable = [lead for lead in leads if lead_id(lead)]
        if len(usable) < len(leads):
            logger.warning(
                "Match for operation %s: ignoring %s lead(s) without a lead number",
                operation_id, len(leads) - len(usable),
            )
        leads = usable

        if not leads:
            logger.info("Match for operation %s: carrier returned no usable leads", operation_id)
            return {"matched": 0, "candidates": len(candidates), "leads": 0}

        batch_size = self.settings.MATCH_BATCH_SIZE
        matched = 0
        batch: list[tuple[Order, dict]] = []
        for order in candidates:
            lead = find_match(order.customer_phone, order.customer_name, leads, self.strategy)
            if lead is None:
                continue
            batch.append((order, lead))
            if len(batch) >= batch_size:
                matched += self._write_batch(operation_id, batch)
                batch = []
        if batch:
            matched += self._write_batch(operation_id, batch)

        logger.info(
            "Match for operation %s: %s of %s order(s) matched against %s lead(s)",
            operation_id, matched, len(candidates), len(leads),
        )
        return {"matched": matched, "candidates": len(candidates), "leads": len(leads)}

    async def update_carrier_status(self, operation_id: str) -> dict:
        """
        Refresh status and tracking of matched, unsettled orders from the carrier.
        Returns {"updated"}, plus "error" if the carrier failed partway (earlier writes are kept).
        """
        orders = self.matched_open_orders(operation_id)
        if not orders:
            return {"updated": 0}
        client = self.carrier_factory(self.db, operation_id)
        if client is None:
            return {"updated": 0, "error": "No carrier credentials"}

        batch_size = self.settings.MATCH_BATCH_SIZE
        updated = 0
        dirty = 0
        error = None
        for order in orders:
            try:
                detail = await client.get_lead_status(order.carrier_order_id)
            except CarrierAPIError as e:
                logger.error(
                    "Status refresh for operation %s stopped at lead %s: %s",
                    operation_id, order.carrier_order_id, e,
                )
                error = str(e)
                break
            if not detail:
                continue
            if self._apply_status(order, detail, self.clock()):
                updated += 1
                dirty += 1
            if dirty >= batch_size:
                self.db.commit()
                dirty = 0
        if dirty:
            self.db.commit()

        logger.info("Status refresh for operation %s: %s of %s order(s) changed", operation_id, updated, len(orders))
        result = {"updated": updated}
        if error:
            result["error"] = error
        return result

    def _apply_status(self, order: Order, detail: dict, now: datetime) -> bool:
        current = OrderStatus(order.status)
        status = map_carrier_status(detail.get("status"))
        changed = False
        # An unknown carrier label never drags a progressed order back to pending
        if status != current and not (status == OrderStatus.PENDING and current != OrderStatus.PENDING):
            order.status = status
            changed = True
        tracking = detail.get("tracking_number")
        if tracking and tracking != order.tracking_number:
            order.tracking_number = tracking
            changed = True
        if changed:
            order.last_status_update = now
            order.touch(now)
        return changed
