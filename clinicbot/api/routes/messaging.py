"""
Messaging API Endpoint.

Thin HTTP wrapper over the messaging gateway for internal callers.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from pydantic import Field

from clinicbot.api.middleware.auth import require_internal_secret
from clinicbot.api.schemas import CamelModel
from clinicbot.core.messaging.gateway import MessagingGateway, get_messaging_gateway
from clinicbot.core.messaging.types import ErrorCode, MessageType, SendRequest

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/messaging",
    tags=["Messaging"],
    dependencies=[Depends(require_internal_secret)],
)

# Gateway error code -> HTTP status
ERROR_STATUS = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorCode.MESSAGING_DISABLED: status.HTTP_403_FORBIDDEN,
    ErrorCode.TEMPLATE_PENDING_APPROVAL: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class SendMessageRequest(CamelModel):
    """Gateway send request."""

    to: str = Field(..., min_length=1, examples=["+50499999999"])
    type: str = Field(default=MessageType.GENERIC.value, examples=["confirmation"])
    template_name: Optional[str] = None
    template_params: Optional[dict[str, str]] = None
    body: Optional[str] = Field(default=None, max_length=4096)
    appointment_id: Optional[str] = None
    patient_id: Optional[str] = None
    doctor_id: Optional[str] = None
    organization_id: Optional[str] = None
    line_id: Optional[str] = None


@router.post(
    "/send",
    status_code=status.HTTP_200_OK,
    summary="Send a WhatsApp message",
)
async def send_message(
    request: SendMessageRequest,
    gateway: MessagingGateway = Depends(get_messaging_gateway),
) -> JSONResponse:
    result = await gateway.send(SendRequest(**request.model_dump()))
    if result.ok:
        return JSONResponse(status_code=status.HTTP_200_OK, content=result.to_dict())
    return JSONResponse(
        status_code=ERROR_STATUS.get(result.error_code, status.HTTP_500_INTERNAL_SERVER_ERROR),
        content=result.to_dict(),
    )
