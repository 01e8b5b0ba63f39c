"""
Pydantic schemas for request/response validation (Http/Requests).
"""
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from datetime import datetime


# Sync Schemas
class SyncStats(BaseModel):
    shopifyOrders: int = 0
    newOrders: int = 0
    carrierMatches: int = 0
    updated: int = 0


class SyncRunResponse(BaseModel):
    success: bool
    message: str
    stats: SyncStats = Field(default_factory=SyncStats)
    operations: Dict[str, Any] = Field(default_factory=dict)
    skipped: List[str] = Field(default_factory=list)


class PollingExecutionResponse(BaseModel):
    id: str
    provider: str
    executedAt: Optional[datetime] = None
    ordersFound: int = 0
    ordersProcessed: int = 0
    ordersSucceeded: int = 0
    success: bool
    errorMessage: Optional[str] = None


class ExecutionHistoryResponse(BaseModel):
    executions: List[PollingExecutionResponse]


class WorkerStatusResponse(BaseModel):
    running: bool
    businessHours: bool
    intervalSeconds: int
    lastRun: Optional[str] = None
    nextRun: Optional[str] = None
    inFlight: Dict[str, List[str]]
    lastMessage: Optional[str] = None


# Webhook Schemas
class WebhookAck(BaseModel):
    ok: bool = True
    processed: bool
    created: bool = False
    reason: Optional[str] = None
