"""
Bot API Endpoint.

Runs one conversation turn for a patient message and returns the reply
without sending it. The webhook path sends replies on its own.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import Field

from clinicbot.api.middleware.auth import require_internal_secret
from clinicbot.api.schemas import CamelModel, ErrorResponse
from clinicbot.core.conversation.machine import ConversationStateMachine, get_state_machine

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/bot",
    tags=["Bot"],
    dependencies=[Depends(require_internal_secret)],
)


class BotMessageRequest(CamelModel):
    """Inbound patient message."""

    line_id: str = Field(..., min_length=1, description="WhatsApp line the patient wrote to")
    patient_phone: str = Field(..., min_length=1, examples=["+50499999999"])
    message_text: str = Field(default="", max_length=4096)
    organization_id: Optional[str] = None


class BotMessageResponse(CamelModel):
    """One conversation turn."""

    message: str
    options: list[str] = Field(default_factory=list)
    requires_input: bool = True
    next_state: str
    session_complete: bool = False
    rendered: str = Field(..., description="Message with numbered options, as sent on WhatsApp")


@router.post(
    "/message",
    response_model=BotMessageResponse,
    status_code=status.HTTP_200_OK,
    summary="Run one bot turn",
    responses={401: {"model": ErrorResponse, "description": "Unauthorized"}},
)
async def bot_message(
    request: BotMessageRequest,
    machine: ConversationStateMachine = Depends(get_state_machine),
) -> BotMessageResponse:
    response = await machine.handle_message(
        line_id=request.line_id,
        patient_phone=request.patient_phone,
        message_text=request.message_text,
        organization_id=request.organization_id,
    )
    return BotMessageResponse(
        message=response.message,
        options=response.options,
        requires_input=response.requires_input,
        next_state=response.next_state.value,
        session_complete=response.session_complete,
        rendered=response.render(),
    )
