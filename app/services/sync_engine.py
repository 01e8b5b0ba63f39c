"""
One reconciliation cycle for one operation: Import -> Match -> Status refresh.
Stages run strictly in that order; each records its own failure and the next still runs
against whatever the store holds. One polling_executions row is written per cycle.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings as default_settings
from app.models import PollingExecution, utcnow
from app.services.carrier_match import CarrierFactory, CarrierMatcher
from app.services.order_import import OrderImporter, SyncProgressTracker

logger = logging.getLogger(__name__)

POLLING_PROVIDER = "shopify_carrier"


class SyncEngine:
    """Reconciliation for one operation, bound to one database session."""

    def __init__(
        self,
        db: Session,
        storefront,
        carrier_factory: Optional[CarrierFactory] = None,
        settings=None,
        progress: Optional[SyncProgressTracker] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings or default_settings
        self.clock = clock
        self.importer = OrderImporter(db, storefront, settings=self.settings, progress=progress, clock=clock)
        self.matcher = CarrierMatcher(db, carrier_factory, settings=self.settings, clock=clock)

    async def run_import(self, operation_id: str) -> dict:
        return await self.importer.import_orders(operation_id)

    async def run_match(self, operation_id: str) -> dict:
        match = await self.matcher.match_with_carrier(operation_id)
        refresh = await self.matcher.update_carrier_status(operation_id)
        return {"match": match, "status": refresh}

    async def run_operation(self, operation_id: str) -> dict:
        """
        Full cycle. Returns {"success", "message", "stats": {shopifyOrders, newOrders, carrierMatches, updated}}
        plus "errors" when a stage failed. Never raises for stage failures.
        """
        imported = {"imported": 0, "updated": 0, "failed": 0}
        matched = {"matched": 0}
        refreshed = {"updated": 0}
        errors: list[str] = []

        try:
            imported = await self.importer.import_orders(operation_id)
        except Exception as e:
            self.db.rollback()
            logger.exception("Import stage crashed for operation %s", operation_id)
            imported = {"imported": 0, "updated": 0, "failed": 0, "error": str(e)}
        if imported.get("error"):
            errors.append(f"import: {imported['error']}")

        try:
            matched = await self.matcher.match_with_carrier(operation_id)
        except Exception as e:
            self.db.rollback()
            logger.exception("Match stage crashed for operation %s", operation_id)
            matched = {"matched": 0, "error": str(e)}
        if matched.get("error"):
            errors.append(f"match: {matched['error']}")

        try:
            refreshed = await self.matcher.update_carrier_status(operation_id)
        except Exception as e:
            self.db.rollback()
            logger.exception("Status refresh crashed for operation %s", operation_id)
            refreshed = {"updated": 0, "error": str(e)}
        if refreshed.get("error"):
            errors.append(f"status: {refreshed['error']}")

        stats = {
            "shopifyOrders": imported.get("imported", 0) + imported.get("updated", 0),
            "newOrders": imported.get("imported", 0),
            "carrierMatches": matched.get("matched", 0),
            "updated": refreshed.get("updated", 0),
        }
        success = not errors
        message = (
            f"Sync completed: {stats['newOrders']} new order(s), {stats['carrierMatches']} carrier match(es), "
            f"{stats['updated']} status update(s)"
        )
        if errors:
            message = f"{message}; with errors: {'; '.join(errors)}"

        self.record_execution(
            operation_id,
            orders_found=stats["shopifyOrders"] + imported.get("failed", 0),
            orders_processed=stats["shopifyOrders"],
            orders_succeeded=stats["carrierMatches"] + stats["updated"],
            success=success,
            error_message="; ".join(errors) or None,
        )
        result = {"success": success, "message": message, "stats": stats}
        if errors:
            result["errors"] = errors
        return result

    def record_execution(self, operation_id: str, **fields) -> None:
        """Execution telemetry is best-effort; a failed insert is logged and dropped."""
        try:
            self.db.add(PollingExecution(operation_id=operation_id, provider=POLLING_PROVIDER, executed_at=self.clock(), **fields))
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.warning("Could not record polling execution for operation %s: %s", operation_id, e)
