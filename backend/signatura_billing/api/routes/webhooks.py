"""
Grow Webhook Handler

Public endpoint (no JWT) for Grow payment notifications. Always active,
regardless of the kill switch: payment processing is never blocked.
Authenticity is checked with the shared webhook key by the processor.
"""

import logging

from fastapi import APIRouter, Request

from signatura_billing.api.dependencies import WebhookProcessorDep
from signatura_billing.infrastructure.exceptions import ValidationError
from signatura_billing.infrastructure.services.webhook_processor import WebhookResult


logger = logging.getLogger(__name__)

router = APIRouter()


async def read_webhook_body(request: Request) -> dict:
    """Grow posts form-encoded bodies; JSON is accepted too."""
    content_type = request.headers.get("content-type", "")

    if "application/json" in content_type:
        try:
            body = await request.json()
        except ValueError as e:
            raise ValidationError("Malformed JSON body", original_error=e)
        if not isinstance(body, dict):
            raise ValidationError("Webhook body must be an object")
        return body

    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


@router.post("/webhooks/grow", response_model=WebhookResult)
async def grow_webhook(request: Request, processor: WebhookProcessorDep):
    """
    Handle a Grow payment notification.

    Returns 401 on a bad webhook key, 400 without userId and 502 when Grow
    refuses the approval (the transaction stays unprocessed so a retry
    can apply it).
    """
    body = await read_webhook_body(request)
    result = await processor.process(body)
    logger.info(f"Grow webhook {result.status} ({result.action})")
    return result
