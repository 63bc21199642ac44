"""
Activity intelligence routes.

Thin HTTP surface over the engine stored on ``app.state.intelligence_engine``:
processing status for the UI, the enqueue/contact triggers used by
webhooks and syncs, and manual reprocessing controls for operators.
"""

from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from app.infrastructure.observability.logging import get_logger

router = APIRouter(prefix="/intelligence", tags=["activity-intelligence"])
logger = get_logger(__name__)


class ProcessingStatusResponse(BaseModel):
    type: str
    status: str
    processed: int | None = None
    total: int | None = None
    pending: int | None = None
    error: str | None = None


class EnqueueResponse(BaseModel):
    entry_id: str
    status: str
    enqueued_at: datetime


class ContactRegistrationRequest(BaseModel):
    prospect_id: str
    email: str = Field(min_length=3)
    name: str | None = None


class ContactRegistrationResponse(BaseModel):
    contact_id: str
    prospect_id: str
    opportunity_ids: list[str]


class ReprocessRequest(BaseModel):
    delay_ms: int | None = Field(default=None, ge=0)
    reason: str = "manual"


class ReprocessResponse(BaseModel):
    entry_id: str
    opportunity_id: str
    scheduled_for: datetime


def get_engine(request: Request):
    engine = getattr(request.app.state, "intelligence_engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Intelligence engine not initialized",
        )
    return engine


# MissingDependencyError (404) and DatabaseError (503) are mapped by the app's exception handlers


@router.get(
    "/opportunities/{opportunity_id}/status", response_model=ProcessingStatusResponse
)
async def get_processing_status(opportunity_id: str, engine=Depends(get_engine)):
    """
    Processing status of one opportunity.

    Raises:
        404: Opportunity not found
    """
    return await engine.batch_controller.get_processing_status(opportunity_id)


@router.post(
    "/activities/{activity_id}/enqueue",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def enqueue_activity(activity_id: str, engine=Depends(get_engine)):
    entry = await engine.trigger.enqueue_activity(activity_id)
    return EnqueueResponse(entry_id=entry.id, status=entry.status, enqueued_at=entry.enqueued_at)


@router.post(
    "/contacts",
    response_model=ContactRegistrationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register_contact(body: ContactRegistrationRequest, engine=Depends(get_engine)):
    contact = await engine.trigger.register_contact(body.prospect_id, body.email, body.name)
    return ContactRegistrationResponse(
        contact_id=contact.id,
        prospect_id=contact.prospect_id,
        opportunity_ids=contact.opportunity_ids,
    )


@router.post(
    "/opportunities/{opportunity_id}/reprocess",
    response_model=ReprocessResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def schedule_reprocessing(
    opportunity_id: str,
    body: ReprocessRequest | None = None,
    engine=Depends(get_engine),
):
    """
    Manually (re)schedule a full reprocessing sweep.

    Without ``delay_ms`` a running sweep for the opportunity is restarted.
    """
    body = body or ReprocessRequest()
    opportunity = await engine.repository.get_opportunity(opportunity_id)
    if opportunity is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Opportunity {opportunity_id} not found",
        )

    if body.delay_ms is None:
        entry = await engine.batch_controller.restart(
            opportunity.prospect_id, opportunity_id, reason=body.reason
        )
    else:
        entry = await engine.batch_controller.schedule(
            opportunity.prospect_id,
            opportunity_id,
            delay=timedelta(milliseconds=body.delay_ms),
            reason=body.reason,
        )

    logger.info(
        "Manual reprocessing scheduled",
        opportunity_id=opportunity_id,
        scheduled_for=entry.scheduled_for.isoformat(),
        reason=body.reason,
    )
    return ReprocessResponse(
        entry_id=entry.id, opportunity_id=opportunity_id, scheduled_for=entry.scheduled_for
    )


@router.delete("/opportunities/{opportunity_id}/reprocess")
async def cancel_reprocessing(opportunity_id: str, engine=Depends(get_engine)) -> dict:
    """Drop a scheduled sweep. Running sweeps are not affected."""
    cancelled = await engine.batch_controller.cancel(opportunity_id)
    return {"opportunity_id": opportunity_id, "cancelled": cancelled}


@router.get("/queue/stats")
async def queue_stats(engine=Depends(get_engine)) -> dict:
    return await engine.queue.get_stats()
