"""Liveness and readiness for the checkout service."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from checkout_backend.core.database import check_connection

router = APIRouter(tags=["health"])


@router.get("/health")
def health(request: Request):
    """DB probe plus which payment networks are configured. No secrets."""
    config = request.app.state.checkout.config
    networks = {
        "mercadopago": config.mercadopago is not None,
        "paypal": config.paypal is not None,
    }
    if not check_connection():
        return JSONResponse(status_code=503, content={"ok": False, "db": False, "networks": networks})
    return {"ok": True, "db": True, "networks": networks}
