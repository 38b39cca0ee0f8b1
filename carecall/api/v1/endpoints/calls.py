"""
Calls API Endpoints
Manual outbound placement for a line
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from carecall.api.v1.dependencies import get_container, require_internal_secret
from carecall.core.container import ServiceContainer
from carecall.core.exceptions import IneligibleError, PlacementError
from carecall.domain.models.call_session import CallReason

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calls", tags=["calls"], dependencies=[Depends(require_internal_secret)])


class OutboundCallRequest(BaseModel):
    """Place a call now"""
    line_id: str = Field(..., alias="lineId")
    reason: CallReason = CallReason.MANUAL

    model_config = {"populate_by_name": True}


class OutboundCallResponse(BaseModel):
    call_session_id: str = Field(..., serialization_alias="callSessionId")
    status: str
    carrier_call_sid: Optional[str] = Field(default=None, serialization_alias="carrierCallSid")


@router.post("/outbound", response_model=OutboundCallResponse, response_model_by_alias=True)
async def place_outbound_call(
    body: OutboundCallRequest,
    container: ServiceContainer = Depends(get_container)
):
    """
    Place an outbound call immediately.

    Quiet hours are not applied to manual calls; every other eligibility
    rule is.
    """
    if container.orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Carrier not configured",
        )

    line = await container.store.get_line(body.line_id)
    if line is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Line not found")

    try:
        session = await container.orchestrator.place_call_now(line, reason=body.reason)
    except IneligibleError as e:
        logger.info(f"Manual call refused for line {line.id}: {e.reason}", extra={"line_id": line.id})
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "line_not_eligible", "reason": e.reason},
        )
    except PlacementError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return OutboundCallResponse(
        call_session_id=session.id,
        status=session.status,
        carrier_call_sid=session.carrier_call_sid,
    )
