"""
Provider notification routes.

- POST /{network}/webhook?secret=...: Mercado Pago and PayPal notifications

The secret is checked before the body is read; a mismatch is answered with
401 and nothing else happens.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Query, Request

from checkout_backend.api.checkout import respond
from checkout_backend.core.errors import UnauthenticatedError, error_response
from checkout_backend.features.checkout.confirmer import parse_notification_body
from checkout_backend.features.checkout.orchestrator import run_flow

logger = logging.getLogger("checkout")

router = APIRouter(tags=["webhooks"])


@router.post("/{network}/webhook")
async def provider_webhook(network: str, request: Request, secret: Optional[str] = Query(None)):
    """
    Handle a provider notification.

    Returns:
        {"ok": true, "granted": bool, "duplicate": bool, ...} or {"ok": true, "ignored": "<reason>"}

    Errors:
        401: Secret missing or wrong
        400: Correlation reference missing or corrupt
        502: Provider lookup failed (the provider will redeliver)
    """
    confirmer = request.app.state.confirmer
    if not confirmer.verify_secret(secret):
        logger.warning("callback.rejected", extra={"network": network, "reason": "invalid_secret"})
        return error_response(UnauthenticatedError("Invalid webhook secret", code="invalid_secret"))

    body = parse_notification_body(await request.body(), request.headers.get("content-type"))
    result = await run_flow(confirmer.handle, network, body, dict(request.query_params))
    return respond(result)
