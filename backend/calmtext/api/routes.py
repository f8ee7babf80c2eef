"""
CalmText - HTTP API Routes

Inbound SMS webhook, a JSON message endpoint and session statistics.

Architecture:
    Every message flows through the ConversationOrchestrator, accessed via
    dependency injection from app.state. The webhook acknowledges Twilio
    immediately and handles the message in a background task; the JSON
    endpoint handles it inline and returns the outcome.
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import Response

from calmtext.core.orchestrator import ConversationOrchestrator
from calmtext.sms.privacy import format_phone_number, mask_phone_number, validate_phone_number

from .schemas import (
    HandleResultSchema,
    IncomingSmsRequest,
    MessageRequest,
    SessionStatsResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["api"])
webhook_router = APIRouter(prefix="/sms", tags=["sms"])

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?>\n<Response/>'


# =============================================================================
# Dependencies
# =============================================================================

def get_orchestrator(request: Request) -> ConversationOrchestrator:
    """Dependency to get the orchestrator from app state."""
    return request.app.state.orchestrator


# =============================================================================
# Twilio Webhook
# =============================================================================

@webhook_router.post(
    "/webhook",
    response_class=Response,
    summary="Handle inbound SMS",
    description="Webhook endpoint Twilio calls for every inbound message.",
)
async def sms_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
) -> Response:
    """
    Acknowledge an inbound SMS and process it in the background.

    Replies are sent through the outbound transport, so the TwiML returned
    here is always empty.

    Supports:
    - Form-encoded body (Twilio default)
    - JSON body
    """
    content_type = request.headers.get("content-type", "")

    try:
        if "application/json" in content_type:
            body = await request.json()
        else:
            form = await request.form()
            body = dict(form)

        incoming = IncomingSmsRequest(**body)

    except Exception as e:
        logger.warning("Invalid inbound SMS request: %s", str(e))
        raise HTTPException(status_code=400, detail="Invalid request body")

    # Session keys are E.164
    sender = incoming.from_number
    if not validate_phone_number(sender):
        sender = format_phone_number(sender)

    logger.info(
        "Inbound SMS accepted: from=%s, sid=%s",
        mask_phone_number(sender),
        incoming.message_sid,
    )

    background_tasks.add_task(orchestrator.handle, sender, incoming.body)

    return Response(content=EMPTY_TWIML, media_type="application/xml")


# =============================================================================
# Messages
# =============================================================================

@router.post("/messages", response_model=HandleResultSchema)
async def post_message(
    request: MessageRequest,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """
    Handle a message inline and return the outcome.

    Used by non-SMS channels and for manual testing. The reply is also
    delivered through the configured transport.
    """
    result = await orchestrator.handle(request.user_id, request.text)
    return HandleResultSchema(**result.to_dict())


# =============================================================================
# Sessions
# =============================================================================

@router.get("/sessions/stats", response_model=SessionStatsResponse)
async def session_stats(
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """
    Aggregate statistics over in-process sessions.

    Contains no phone numbers or message text.
    """
    stats = await orchestrator.sessions.get_statistics()
    return SessionStatsResponse(**stats)
