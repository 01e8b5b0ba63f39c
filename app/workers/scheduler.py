"""
Reconciliation worker

Runs the Import -> Match -> Status refresh cycle for every active operation on a
timer (shorter interval during business hours, UTC) and on demand from the admin API.
In-flight guards are per operation and per domain; a request for a busy operation is
logged and dropped, never queued. Single-process only: there is no cross-process lock.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.config import settings as default_settings
from app.database import SessionLocal
from app.models import IntegrationStatus, Operation, PollingExecution, ShopifyIntegration, utcnow
from app.services.carrier_match import CarrierFactory
from app.services.carrier_service import get_operation_carrier_client
from app.services.order_import import SyncProgressTracker
from app.services.shopify_service import ShopifyService
from app.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

STOREFRONT_IMPORT = "storefront_import"
CARRIER_MATCH = "carrier_match"
SYNC_DOMAINS = (STOREFRONT_IMPORT, CARRIER_MATCH)

CLEANUP_EVERY = timedelta(days=1)


class ReconciliationWorker:
    """Timer plus in-flight bookkeeping. All collaborators are injected; nothing is module-global."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        storefront=None,
        carrier_factory: Optional[CarrierFactory] = None,
        clock: Callable[[], datetime] = utcnow,
        settings=None,
    ):
        self.session_factory = session_factory
        self.storefront = storefront or ShopifyService()
        self.carrier_factory = carrier_factory or get_operation_carrier_client
        self.clock = clock
        self.settings = settings or default_settings
        self.progress = SyncProgressTracker()

        self.in_flight: Dict[str, set] = {domain: set() for domain in SYNC_DOMAINS}
        self.running = False
        self.last_run: Optional[datetime] = None
        self.next_run: Optional[datetime] = None
        self.last_result: Optional[Dict[str, Any]] = None
        self.last_cleanup: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None

    # Interval

    def is_business_hours(self, now: Optional[datetime] = None) -> bool:
        hour = (now or self.clock()).hour
        return self.settings.BUSINESS_HOURS_START_UTC <= hour < self.settings.BUSINESS_HOURS_END_UTC

    def get_polling_interval(self, now: Optional[datetime] = None) -> int:
        """Seconds until the next tick, decided from the current UTC hour."""
        if self.is_business_hours(now):
            return self.settings.BUSINESS_HOURS_INTERVAL_SEC
        return self.settings.OFF_HOURS_INTERVAL_SEC

    # Guards

    def _claim(self, operation_id: str, domains: tuple) -> bool:
        """Claim every domain for the operation, or none of them."""
        if any(operation_id in self.in_flight[domain] for domain in domains):
            return False
        for domain in domains:
            self.in_flight[domain].add(operation_id)
        return True

    def _release(self, operation_id: str, domains: tuple) -> None:
        for domain in domains:
            self.in_flight[domain].discard(operation_id)

    def is_busy(self, operation_id: str) -> bool:
        return any(operation_id in ops for ops in self.in_flight.values())

    # Cycles

    def active_operation_ids(self, operation_id: Optional[str] = None) -> List[str]:
        """Operations with an active Shopify integration, in a stable order."""
        db = self.session_factory()
        try:
            query = (
                db.query(Operation.id)
                .join(ShopifyIntegration, ShopifyIntegration.operation_id == Operation.id)
                .filter(
                    Operation.is_active.is_(True),
                    ShopifyIntegration.status == IntegrationStatus.ACTIVE,
                )
            )
            if operation_id:
                query = query.filter(Operation.id == operation_id)
            return [row[0] for row in query.order_by(Operation.created_at.asc(), Operation.id.asc()).all()]
        finally:
            db.close()

    async def _run_guarded(
        self,
        operation_id: str,
        domains: tuple,
        stage: Callable[[SyncEngine], Awaitable[Dict[str, Any]]],
    ) -> Dict[str, Any]:
        if not self._claim(operation_id, domains):
            logger.info("Sync for operation %s already in progress (%s); request dropped", operation_id, ", ".join(domains))
            return {"success": False, "skipped": True, "message": "Sync already in progress for this operation"}

        db: Optional[Session] = None
        try:
            db = self.session_factory()
            engine = SyncEngine(
                db,
                self.storefront,
                carrier_factory=self.carrier_factory,
                settings=self.settings,
                progress=self.progress,
                clock=self.clock,
            )
            return await asyncio.wait_for(stage(engine), timeout=self.settings.SYNC_CYCLE_TIMEOUT_SEC)
        except asyncio.TimeoutError:
            db.rollback()
            self.progress.finish(operation_id, "timed out")
            logger.error("Sync for operation %s timed out after %ss", operation_id, self.settings.SYNC_CYCLE_TIMEOUT_SEC)
            return {"success": False, "message": f"Sync timed out after {self.settings.SYNC_CYCLE_TIMEOUT_SEC}s"}
        except Exception as e:
            if db is not None:
                db.rollback()
            logger.exception("Sync for operation %s crashed", operation_id)
            return {"success": False, "message": f"Sync crashed: {e}"}
        finally:
            # Guards are released even when the session could not be opened
            if db is not None:
                db.close()
            self._release(operation_id, domains)

    async def run_sync_cycle(self, operation_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Full cycle for one operation, or for every active one in turn.
        Returns {"success", "message", "stats", "operations", "skipped"}; stats are summed over operations.
        """
        started = self.clock()
        operation_ids = self.active_operation_ids(operation_id)
        totals = {"shopifyOrders": 0, "newOrders": 0, "carrierMatches": 0, "updated": 0}
        results: Dict[str, Any] = {}
        skipped: List[str] = []

        if not operation_ids:
            message = (
                f"Operation {operation_id} has no active Shopify integration"
                if operation_id else "No active operations to sync"
            )
            logger.info(message)
            result = {"success": True, "message": message, "stats": totals, "operations": {}, "skipped": []}
            self.last_result = result
            return result

        for op_id in operation_ids:
            outcome = await self._run_guarded(op_id, SYNC_DOMAINS, lambda engine, op_id=op_id: engine.run_operation(op_id))
            results[op_id] = outcome
            if outcome.get("skipped"):
                skipped.append(op_id)
                continue
            for key in totals:
                totals[key] += (outcome.get("stats") or {}).get(key, 0)

        ran = [op for op in operation_ids if op not in skipped]
        success = all(results[op].get("success") for op in ran)
        message = (
            f"Sync completed for {len(ran)} operation(s): {totals['newOrders']} new order(s), "
            f"{totals['carrierMatches']} carrier match(es), {totals['updated']} status update(s)"
        )
        if skipped:
            message += f"; {len(skipped)} skipped (already running)"
        logger.info("%s in %.1fs", message, (self.clock() - started).total_seconds())

        result = {"success": success, "message": message, "stats": totals, "operations": results, "skipped": skipped}
        self.last_run = self.clock()
        self.last_result = result
        return result

    async def run_import(self, operation_id: str) -> Dict[str, Any]:
        """Import stage only, under the storefront_import guard."""
        return await self._run_guarded(operation_id, (STOREFRONT_IMPORT,), lambda engine: engine.run_import(operation_id))

    async def run_match(self, operation_id: str) -> Dict[str, Any]:
        """Match and status refresh only, under the carrier_match guard."""
        return await self._run_guarded(operation_id, (CARRIER_MATCH,), lambda engine: engine.run_match(operation_id))

    # Telemetry retention

    def cleanup_old_executions(self, now: Optional[datetime] = None) -> int:
        """Delete polling_executions older than the retention window. Returns rows deleted."""
        cutoff = (now or self.clock()) - timedelta(days=self.settings.POLLING_RETENTION_DAYS)
        db = self.session_factory()
        try:
            deleted = (
                db.query(PollingExecution)
                .filter(PollingExecution.executed_at < cutoff)
                .delete(synchronize_session=False)
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        if deleted:
            logger.info("Pruned %s polling execution(s) older than %s", deleted, cutoff.date())
        return deleted

    def _cleanup_if_due(self) -> None:
        now = self.clock()
        if self.last_cleanup is None or now - self.last_cleanup >= CLEANUP_EVERY:
            self.cleanup_old_executions(now)
            self.last_cleanup = now

    # Loop

    async def _loop(self) -> None:
        await asyncio.sleep(self.settings.SYNC_FIRST_DELAY_SEC)
        while self.running:
            try:
                await self.run_sync_cycle()
                self._cleanup_if_due()
            except Exception:
                logger.exception("Reconciliation tick failed")
            interval = self.get_polling_interval()
            self.next_run = self.clock() + timedelta(seconds=interval)
            logger.debug("Next reconciliation tick in %ss", interval)
            await asyncio.sleep(interval)

    def start(self) -> None:
        """Schedule the loop on the running event loop."""
        if self.running:
            return
        self.running = True
        self.next_run = self.clock() + timedelta(seconds=self.settings.SYNC_FIRST_DELAY_SEC)
        self._task = asyncio.create_task(self._loop())
        logger.info("Reconciliation worker started (first run in %ss)", self.settings.SYNC_FIRST_DELAY_SEC)

    async def stop(self) -> None:
        self.running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Reconciliation worker stopped")

    def get_status(self) -> Dict[str, Any]:
        now = self.clock()
        return {
            "running": self.running,
            "businessHours": self.is_business_hours(now),
            "intervalSeconds": self.get_polling_interval(now),
            "lastRun": self.last_run.isoformat() if self.last_run else None,
            "nextRun": self.next_run.isoformat() if self.next_run else None,
            "inFlight": {domain: sorted(ops) for domain, ops in self.in_flight.items()},
            "lastMessage": (self.last_result or {}).get("message"),
        }
