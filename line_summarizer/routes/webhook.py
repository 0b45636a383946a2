import json
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request, status
from pydantic import ValidationError

from line_summarizer.core import metrics
from line_summarizer.core.exceptions import BadRequestError, SignatureInvalidError
from line_summarizer.core.logging_config import get_logger
from line_summarizer.core.signature import verify_signature
from line_summarizer.dependencies import get_channel_secret
from line_summarizer.schemas.webhook import WebhookAck, WebhookEnvelope
from line_summarizer.services.automation_forwarder import AutomationForwarder, get_automation_forwarder
from line_summarizer.services.webhook_handler import WebhookHandler, get_webhook_handler

router = APIRouter()
logger = get_logger(__name__)


@router.post("/webhook/line", response_model=WebhookAck, status_code=status.HTTP_200_OK)
async def line_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_line_signature: Optional[str] = Header(default=None),
    channel_secret: str = Depends(get_channel_secret),
    handler: WebhookHandler = Depends(get_webhook_handler),
    forwarder: AutomationForwarder = Depends(get_automation_forwarder),
):
    """
    LINE Messaging API webhook.

    - 401 when X-Line-Signature does not match the raw body
    - 400 when the body is not JSON or has no events array
    - 200 otherwise; events are processed after the response is sent, each
      one independently, and a copy of the body is forwarded to the
      automation endpoint without being awaited
    """
    body = await request.body()

    if not verify_signature(body, x_line_signature, channel_secret):
        metrics.webhook_signature_failures_total.inc()
        logger.warning(
            "webhook_signature_invalid",
            has_signature=bool(x_line_signature),
            secret_configured=bool(channel_secret),
            body_bytes=len(body),
        )
        raise SignatureInvalidError()

    try:
        payload = json.loads(body)
    except ValueError:
        raise BadRequestError("Webhook body is not valid JSON")

    try:
        envelope = WebhookEnvelope.model_validate(payload)
    except ValidationError:
        raise BadRequestError("Webhook body must contain an events array")

    forwarder.forward(body, x_line_signature)

    logger.info("webhook_received", destination=envelope.destination, events=len(envelope.events))
    if envelope.events:
        background_tasks.add_task(handler.handle_envelope, envelope)

    return WebhookAck(received=len(envelope.events))
