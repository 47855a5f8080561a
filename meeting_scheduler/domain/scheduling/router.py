"""Scheduling router - FastAPI endpoints for scheduling negotiation"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import ValidationError
from sqlalchemy.orm import Session

from ...auth import require_api_key
from ...database import get_db
from ...services.graph_client import ProviderError
from ...webhook_security import verify_inbound_signature
from .automation import AutomationScheduler
from .schemas import (
    AttentionItemResponse,
    AutomationRunResponse,
    CancelRequest,
    CompleteRequest,
    InboundReply,
    ProcessReplyResponse,
    RescheduleRequest,
    ResolveAttentionRequest,
    SchedulingActionResponse,
    SchedulingRequestCreate,
    SchedulingRequestResponse,
)
from .service import RequestNotFoundError, SchedulingService
from .state_machine import (
    AvailabilityRequiredError,
    DataIntegrityError,
    InvalidTransitionError,
    SchedulingError,
    StaleStatusError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scheduling", tags=["Scheduling"])


def get_scheduling_service(db: Session = Depends(get_db)) -> SchedulingService:
    """Dependency injection for SchedulingService"""
    return SchedulingService(db)


def get_automation_scheduler(service: SchedulingService = Depends(get_scheduling_service)) -> AutomationScheduler:
    return AutomationScheduler(service.db, service=service)


def to_http_error(e: Exception) -> HTTPException:
    """Map a domain error to the status code the API reports"""
    if isinstance(e, RequestNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (StaleStatusError, InvalidTransitionError)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (AvailabilityRequiredError, DataIntegrityError)):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, ProviderError):
        return HTTPException(status_code=503, detail=f"Calendar provider unavailable: {str(e)}")
    return HTTPException(status_code=400, detail=str(e))


# ============================================================================
# REQUESTS
# ============================================================================


@router.post("/requests", response_model=SchedulingRequestResponse, status_code=201)
async def create_request(
    data: SchedulingRequestCreate,
    _operator: str = Depends(require_api_key),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Create a scheduling request and send the initial proposal unless send_initial is false"""
    request = service.create_request(data)
    if data.send_initial:
        await service.start_outreach(request)
    return service.get_request(request.id)


@router.get("/requests/{request_id}", response_model=SchedulingRequestResponse)
async def get_request(
    request_id: str,
    _operator: str = Depends(require_api_key),
    service: SchedulingService = Depends(get_scheduling_service),
):
    try:
        return service.get_request(request_id)
    except SchedulingError as e:
        raise to_http_error(e) from e


@router.get("/requests/{request_id}/actions", response_model=list[SchedulingActionResponse])
async def get_request_actions(
    request_id: str,
    _operator: str = Depends(require_api_key),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Audit trail in the order it happened"""
    try:
        return service.list_actions(request_id)
    except SchedulingError as e:
        raise to_http_error(e) from e


@router.post("/requests/{request_id}/cancel", response_model=SchedulingRequestResponse)
async def cancel_request(
    request_id: str,
    data: CancelRequest,
    _operator: str = Depends(require_api_key),
    service: SchedulingService = Depends(get_scheduling_service),
):
    try:
        return service.cancel(request_id, data.reason, data.cancelled_by)
    except SchedulingError as e:
        raise to_http_error(e) from e


@router.post("/requests/{request_id}/complete", response_model=SchedulingRequestResponse)
async def complete_request(
    request_id: str,
    data: CompleteRequest,
    _operator: str = Depends(require_api_key),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Record that the meeting took place"""
    try:
        return service.mark_completed(request_id, data.completed_by)
    except SchedulingError as e:
        raise to_http_error(e) from e


@router.post("/requests/{request_id}/reschedule", response_model=SchedulingRequestResponse)
async def reschedule_request(
    request_id: str,
    data: RescheduleRequest,
    _operator: str = Depends(require_api_key),
    service: SchedulingService = Depends(get_scheduling_service),
):
    try:
        return await service.reschedule(request_id, data.new_time, data.requested_by)
    except (SchedulingError, ProviderError) as e:
        raise to_http_error(e) from e


# ============================================================================
# INBOUND REPLIES & AUTOMATION
# ============================================================================


@router.post("/inbound", response_model=ProcessReplyResponse)
async def process_inbound_reply(
    raw_body: bytes = Depends(verify_inbound_signature),
    service: SchedulingService = Depends(get_scheduling_service),
):
    """Inbound reply webhook; safe to redeliver"""
    try:
        reply = InboundReply.model_validate_json(raw_body)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False)) from e

    logger.info(f"📨 Inbound reply {reply.id} from {reply.sender.address}")
    return await service.process_inbound_reply(reply)


@router.post("/automation/run", response_model=AutomationRunResponse)
async def run_automation(
    _operator: str = Depends(require_api_key),
    scheduler: AutomationScheduler = Depends(get_automation_scheduler),
):
    """Run one automation sweep now"""
    return await scheduler.run_sweep()


# ============================================================================
# ATTENTION ITEMS
# ============================================================================


@router.get("/attention", response_model=list[AttentionItemResponse])
async def list_attention_items(
    owner: Optional[str] = Query(None),
    include_resolved: bool = Query(False),
    _operator: str = Depends(require_api_key),
    service: SchedulingService = Depends(get_scheduling_service),
):
    return service.list_attention_items(owner, include_resolved)


@router.post("/attention/{item_id}/resolve", response_model=AttentionItemResponse)
async def resolve_attention_item(
    item_id: int,
    data: ResolveAttentionRequest,
    _operator: str = Depends(require_api_key),
    service: SchedulingService = Depends(get_scheduling_service),
):
    try:
        return service.resolve_attention_item(item_id, data.resolved_by, data.note)
    except SchedulingError as e:
        raise to_http_error(e) from e
