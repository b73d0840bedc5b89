"""Stripe webhook endpoint."""

import logging
from typing import Dict

from fastapi import APIRouter, Request

from guardian.dependencies import get_services
from guardian.errors import BadSignatureError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/stripe", tags=["Webhooks"])


@router.post("/webhook")
async def handle_stripe_webhook(request: Request) -> Dict[str, bool]:
    """
    Handle Stripe webhook events.

    The signature is checked against the raw body, so the body is read
    before anything parses it. Per-event failures are logged and still
    acknowledged; the periodic sync repairs whatever they missed.

    No authentication required (uses Stripe signature verification).

    Returns:
        Dict with received status.

    Raises:
        BadSignatureError(400): If the header is missing or verification fails.
        InitializationError(503): If the service is not configured.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    if not signature:
        logger.warning("Webhook received without Stripe-Signature header")
        raise BadSignatureError("Missing Stripe-Signature header")

    services = get_services(request)
    event = services.stripe.construct_event(payload, signature)
    logger.info(f"Received Stripe webhook: {event['type']} ({event['id']})")

    await services.webhooks.process(event)
    return {"received": True}
