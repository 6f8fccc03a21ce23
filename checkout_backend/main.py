import os
from contextlib import asynccontextmanager
from typing import Dict, Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from starlette.exceptions import HTTPException
from fastapi.exceptions import RequestValidationError

# Settings read the process env at import, so the .env file goes in first
_ENV_FILE = os.path.join(os.path.dirname(os.path.abspath(__file__)), ".env")
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(_ENV_FILE)

from checkout_backend.core.auth import SessionProvider, build_session_provider  # noqa: E402
from checkout_backend.core.config import CheckoutConfig, build_checkout_config, settings, validate_config  # noqa: E402
from checkout_backend.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from checkout_backend.core.logging import configure_logging, log_event  # noqa: E402
from checkout_backend.core.middleware.cors import CheckoutCorsMiddleware  # noqa: E402
from checkout_backend.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from checkout_backend.core.validation import validate_env  # noqa: E402
from checkout_backend.api import checkout, health, webhooks  # noqa: E402
from checkout_backend.features.checkout.confirmer import CallbackConfirmer  # noqa: E402
from checkout_backend.features.checkout.models import Network  # noqa: E402
from checkout_backend.features.checkout.orchestrator import CheckoutContext, build_adapters  # noqa: E402
from checkout_backend.features.checkout.provider import ProviderAdapter  # noqa: E402
from checkout_backend.features.entitlements.service import EntitlementGranter, SqlEntitlementGranter  # noqa: E402


@asynccontextmanager
async def lifespan(app: FastAPI):
    config: CheckoutConfig = app.state.checkout.config
    log_event(
        "info",
        "checkout.startup",
        extra={
            "mercadopago": config.mercadopago.mode if config.mercadopago else "disabled",
            "mercadopago_sandbox": bool(config.mercadopago and config.mercadopago.is_test),
            "paypal": config.paypal.env if config.paypal else "disabled",
        },
    )
    try:
        yield
    finally:
        log_event("info", "checkout.shutdown")


def create_app(
    config: Optional[CheckoutConfig] = None,
    session_provider: Optional[SessionProvider] = None,
    adapters: Optional[Dict[Network, ProviderAdapter]] = None,
    granter: Optional[EntitlementGranter] = None,
) -> FastAPI:
    """Build the application. Collaborators default to the environment's."""
    config = config or build_checkout_config(settings)
    if session_provider is None:
        session_provider = build_session_provider(settings)
    if adapters is None:
        adapters = build_adapters(config)

    app = FastAPI(title="Checkout - Backend", lifespan=lifespan)
    app.state.checkout = CheckoutContext(config=config, session_provider=session_provider, adapters=adapters)
    app.state.confirmer = CallbackConfirmer(config, adapters, granter or SqlEntitlementGranter())

    # Middlewares (last added runs first)
    app.add_middleware(CheckoutCorsMiddleware, browser_paths=checkout.BROWSER_PATHS)
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(checkout.router)
    app.include_router(webhooks.router)
    app.include_router(health.router)
    return app


configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

app = create_app()
