"""
Sync routes: manual "sync now", single-stage runs, progress and execution history.
The worker lives on app.state; these handlers share its in-flight guards with the timer.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from app.database import get_db
from app.http.requests.schemas import ExecutionHistoryResponse, SyncRunResponse, WorkerStatusResponse
from app.models import Operation, PollingExecution
from app.workers.scheduler import ReconciliationWorker

logger = logging.getLogger(__name__)
router = APIRouter()


def get_worker(request: Request) -> ReconciliationWorker:
    worker = getattr(request.app.state, "worker", None)
    if worker is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Sync worker not initialised")
    return worker


def _require_operation(db: Session, operation_id: str) -> Operation:
    operation = db.query(Operation).filter(Operation.id == operation_id).first()
    if not operation:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Operation not found")
    return operation


@router.post("/run", response_model=SyncRunResponse)
async def run_sync(
    operation_id: Optional[str] = Query(None),
    worker: ReconciliationWorker = Depends(get_worker),
):
    """Run a full cycle now, for one operation or all. 200 with stats even when a stage failed."""
    try:
        return await worker.run_sync_cycle(operation_id)
    except Exception as e:
        logger.exception("Manual sync failed (operation=%s)", operation_id or "all")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Sync failed: {e}")


@router.post("/import/{operation_id}")
async def run_import(
    operation_id: str,
    db: Session = Depends(get_db),
    worker: ReconciliationWorker = Depends(get_worker),
):
    _require_operation(db, operation_id)
    result = await worker.run_import(operation_id)
    if result.get("skipped"):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result["message"])
    return result


@router.post("/match/{operation_id}")
async def run_match(
    operation_id: str,
    db: Session = Depends(get_db),
    worker: ReconciliationWorker = Depends(get_worker),
):
    _require_operation(db, operation_id)
    result = await worker.run_match(operation_id)
    if result.get("skipped"):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result["message"])
    return result


@router.get("/progress/{operation_id}")
async def import_progress(operation_id: str, worker: ReconciliationWorker = Depends(get_worker)):
    return worker.progress.snapshot(operation_id)


@router.get("/history/{operation_id}", response_model=ExecutionHistoryResponse)
async def execution_history(
    operation_id: str,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """Most recent polling executions for the operation, newest first."""
    _require_operation(db, operation_id)
    rows = (
        db.query(PollingExecution)
        .filter(PollingExecution.operation_id == operation_id)
        .order_by(PollingExecution.executed_at.desc())
        .limit(limit)
        .all()
    )
    return {
        "executions": [
            {
                "id": row.id,
                "provider": row.provider,
                "executedAt": row.executed_at,
                "ordersFound": row.orders_found,
                "ordersProcessed": row.orders_processed,
                "ordersSucceeded": row.orders_succeeded,
                "success": row.success,
                "errorMessage": row.error_message,
            }
            for row in rows
        ]
    }


@router.get("/status", response_model=WorkerStatusResponse)
async def worker_status(worker: ReconciliationWorker = Depends(get_worker)):
    return worker.get_status()
