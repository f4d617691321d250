"""
Message API routes.

Outbound sends through the admission gate.
"""
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from wahub.dependencies.auth import require_permission
from wahub.dependencies.services import get_dispatcher
from wahub.errors import ValidationError
from wahub.services.admission_gate import AdmissionReason
from wahub.services.jwt_service import Principal
from wahub.services.message_service import MessageDispatcher


router = APIRouter(prefix="/api/clients", tags=["messages"])


class SendMessageRequest(BaseModel):
    recipient: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)


class SendMessageResponse(BaseModel):
    message_id: str
    status: str
    delay_ms: int
    warnings: list[str] = Field(default_factory=list)


@router.post("/{client_id}/messages", response_model=SendMessageResponse)
async def send_message(
    client_id: str,
    request: SendMessageRequest,
    principal: Principal = Depends(require_permission("messages:send")),
    dispatcher: MessageDispatcher = Depends(get_dispatcher),
):
    """
    Send a WhatsApp message from one of the organisation's clients.

    Returns 429 with Retry-After when the client is over a rate ceiling,
    422 when the content is rejected and 502 when the transport fails.
    """
    try:
        result = await dispatcher.send_message(
            principal.organisation_id,
            client_id,
            request.recipient,
            request.content,
        )
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    admission = result.admission
    if result.status == "blocked" and admission.reason is AdmissionReason.CONTENT:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": "Message content rejected",
                "reason": admission.reason.value,
                "rule": admission.detail,
            },
        )

    if result.status == "blocked":
        headers = {}
        if admission.retry_after_seconds is not None:
            headers["Retry-After"] = str(admission.retry_after_seconds)
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "detail": "Message not admitted",
                "reason": admission.reason.value,
                "retry_after_seconds": admission.retry_after_seconds,
            },
            headers=headers,
        )

    if result.status == "failed":
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Transport failed: {result.error}"
        )

    return SendMessageResponse(
        message_id=result.message_id,
        status=result.status,
        delay_ms=admission.delay_ms,
        warnings=list(admission.warnings),
    )
