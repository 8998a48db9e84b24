"""
Payment Retry Management API

Provides endpoints for:
- Reporting a failed charge (gateway callback handler)
- Executing, abandoning and manually triggering retries
- Recording a customer response to a dunning campaign
- Reading retry status per subscription or per owner
- Processing due timers on demand (external cron)
"""

from typing import Annotated
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from payment_recovery.modules.recovery.domain.container import RecoveryServices, get_recovery_services
from payment_recovery.modules.scheduling.domain.processor import TimerProcessor
from payment_recovery.schemas.recovery import (
    AbandonRetryResult,
    CustomerResponseResult,
    FailureHandledResponse,
    PaymentFailureRequest,
    RetryExecutionResponse,
    RetryStatusResponse,
)

router = APIRouter(prefix="/payments/retry-management", tags=["Payment Recovery"])
logger = structlog.get_logger()

Services = Annotated[RecoveryServices, Depends(get_recovery_services)]


class ProcessTimersResponse(BaseModel):
    processed: int
    succeeded: int
    failed: int


@router.post("/failures", response_model=FailureHandledResponse)
async def report_payment_failure(body: PaymentFailureRequest, services: Services):
    """Record a failed charge and schedule its recovery. Safe to redeliver."""
    return await services.failure_handler.handle_failure(
        payment_id=body.payment_id,
        subscription_id=body.subscription_id,
        failure_reason=body.failure_reason,
        error_code=body.error_code,
    )


@router.post("/retries/{retry_id}/execute", response_model=RetryExecutionResponse)
async def execute_retry(retry_id: UUID, services: Services):
    return await services.retry_executor.execute_retry(retry_id)


@router.post("/retries/{retry_id}/abandon", response_model=AbandonRetryResult)
async def abandon_retry(retry_id: UUID, services: Services):
    """Admin override: cancel a scheduled retry."""
    return await services.retry_executor.abandon_retry(retry_id, actor="admin_api")


@router.post("/subscriptions/{subscription_id}/manual-retry", response_model=RetryExecutionResponse)
async def trigger_manual_retry(subscription_id: UUID, services: Services):
    return await services.retry_executor.trigger_manual_retry(subscription_id, actor="admin_api")


@router.post("/subscriptions/{subscription_id}/customer-response", response_model=CustomerResponseResult)
async def record_customer_response(subscription_id: UUID, services: Services):
    return await services.dunning.record_customer_response(subscription_id)


@router.get("/subscriptions/{subscription_id}", response_model=RetryStatusResponse)
async def get_retry_status(subscription_id: UUID, services: Services):
    return await services.status.get_retry_status(subscription_id)


@router.get("/owners/{owner_id}", response_model=RetryStatusResponse)
async def get_owner_retry_status(owner_id: UUID, services: Services):
    return await services.status.get_owner_status(owner_id)


@router.post("/timers/process", response_model=ProcessTimersResponse)
async def process_due_timers(
    services: Services,
    limit: int = Query(default=20, ge=1, le=100),
):
    """Run due timers now (for deployments that drive the clock externally)."""
    results = await TimerProcessor(services).process_due_timers(limit=limit)
    logger.info("timers_processed_via_api", processed=results["processed"])
    return ProcessTimersResponse(
        processed=results["processed"],
        succeeded=results["succeeded"],
        failed=results["failed"],
    )
