import logging

from dataclasses import dataclass
from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional


class ConfigError(RuntimeError):
    """Raised when checkout configuration violates a startup invariant."""


MP_TEST_PREFIX = "TEST-"
MP_LIVE_PREFIX = "APP_USR-"

MP_MODES = ("test", "production")
PAYPAL_ENVS = ("sandbox", "live")

PAYPAL_API_BASES = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Identity provider
    AUTH_URL: Optional[str] = None
    AUTH_ANON_KEY: Optional[str] = None
    AUTH_JWT_SECRET: Optional[str] = None  # enables local HS256 verification

    # Mercado Pago
    MP_MODE: str = "test"  # test | production
    MP_ACCESS_TOKEN_TEST: Optional[str] = None
    MP_ACCESS_TOKEN: Optional[str] = None
    MP_WEBHOOK_SECRET: Optional[str] = None  # shared by both networks' callbacks

    # PayPal
    PAYPAL_ENV: str = "sandbox"  # sandbox | live
    PAYPAL_CLIENT_ID_SANDBOX: Optional[str] = None
    PAYPAL_CLIENT_SECRET_SANDBOX: Optional[str] = None
    PAYPAL_CLIENT_ID: Optional[str] = None
    PAYPAL_CLIENT_SECRET: Optional[str] = None

    # Checkout
    CHECKOUT_RETURN_URL_BASE: Optional[str] = None
    CHECKOUT_STATEMENT_DESCRIPTOR: str = "SEENCEL"
    CHECKOUT_BRAND_NAME: str = "Seencel"
    PROVIDER_TIMEOUT_SECONDS: float = 15.0
    DEFAULT_CURRENCY: str = "ARS"
    DEFAULT_COURSE_MONTHS: int = 12

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
settings = Settings()


@dataclass(frozen=True)
class MercadoPagoCredentials:
    access_token: str
    mode: str

    @property
    def is_test(self) -> bool:
        return self.mode == "test"


@dataclass(frozen=True)
class PayPalCredentials:
    client_id: str
    client_secret: str
    env: str

    @property
    def api_base(self) -> str:
        return PAYPAL_API_BASES[self.env]


@dataclass(frozen=True)
class CheckoutConfig:
    """Immutable checkout configuration built once at process start.

    A network whose credentials are absent is disabled (None) rather than
    failing startup; a credential that contradicts its mode flag is fatal.
    """
    mercadopago: Optional[MercadoPagoCredentials]
    paypal: Optional[PayPalCredentials]
    webhook_secret: Optional[str]
    return_url_base: Optional[str] = None
    statement_descriptor: str = "SEENCEL"
    brand_name: str = "Seencel"
    provider_timeout: float = 15.0
    default_currency: str = "ARS"
    default_course_months: int = 12

    def network_enabled(self, network: str) -> bool:
        return getattr(self, network, None) is not None


def _build_mercadopago(cfg) -> Optional[MercadoPagoCredentials]:
    mode = (getattr(cfg, "MP_MODE", "test") or "test").strip().lower()
    if mode not in MP_MODES:
        raise ConfigError(f"MP_MODE must be one of {', '.join(MP_MODES)}, got {mode!r}")

    if mode == "test":
        token = getattr(cfg, "MP_ACCESS_TOKEN_TEST", None)
        expected, forbidden = MP_TEST_PREFIX, MP_LIVE_PREFIX
    else:
        token = getattr(cfg, "MP_ACCESS_TOKEN", None)
        expected, forbidden = MP_LIVE_PREFIX, MP_TEST_PREFIX

    if not token:
        return None
    token = token.strip()
    if token.startswith(forbidden) or not token.startswith(expected):
        raise ConfigError(
            f"Mercado Pago access token for MP_MODE={mode} must start with {expected!r}"
        )
    return MercadoPagoCredentials(access_token=token, mode=mode)


def _build_paypal(cfg) -> Optional[PayPalCredentials]:
    env = (getattr(cfg, "PAYPAL_ENV", "sandbox") or "sandbox").strip().lower()
    if env not in PAYPAL_ENVS:
        raise ConfigError(f"PAYPAL_ENV must be one of {', '.join(PAYPAL_ENVS)}, got {env!r}")

    sandbox_id = getattr(cfg, "PAYPAL_CLIENT_ID_SANDBOX", None)
    if env == "sandbox":
        client_id = sandbox_id
        client_secret = getattr(cfg, "PAYPAL_CLIENT_SECRET_SANDBOX", None)
    else:
        client_id = getattr(cfg, "PAYPAL_CLIENT_ID", None)
        client_secret = getattr(cfg, "PAYPAL_CLIENT_SECRET", None)
        if client_id and sandbox_id and client_id.strip() == sandbox_id.strip():
            raise ConfigError("PAYPAL_ENV=live is configured with the sandbox client id")

    if not client_id or not client_secret:
        return None
    return PayPalCredentials(client_id=client_id.strip(), client_secret=client_secret.strip(), env=env)


def build_checkout_config(settings_obj=None) -> CheckoutConfig:
    """Build and validate the checkout configuration.

    Raises:
        ConfigError: when a credential does not match its mode flag.
    """
    cfg = settings_obj or settings
    months = int(getattr(cfg, "DEFAULT_COURSE_MONTHS", 12) or 12)
    if months <= 0:
        raise ConfigError("DEFAULT_COURSE_MONTHS must be positive")
    timeout = float(getattr(cfg, "PROVIDER_TIMEOUT_SECONDS", 15.0) or 15.0)
    if timeout <= 0:
        raise ConfigError("PROVIDER_TIMEOUT_SECONDS must be positive")

    base = getattr(cfg, "CHECKOUT_RETURN_URL_BASE", None)
    return CheckoutConfig(
        mercadopago=_build_mercadopago(cfg),
        paypal=_build_paypal(cfg),
        webhook_secret=getattr(cfg, "MP_WEBHOOK_SECRET", None) or None,
        return_url_base=base.rstrip("/") if base else None,
        statement_descriptor=getattr(cfg, "CHECKOUT_STATEMENT_DESCRIPTOR", "SEENCEL"),
        brand_name=getattr(cfg, "CHECKOUT_BRAND_NAME", "Seencel"),
        provider_timeout=timeout,
        default_currency=(getattr(cfg, "DEFAULT_CURRENCY", "ARS") or "ARS").upper(),
        default_course_months=months,
    )


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate required configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    Secrets are not logged, only missing keys.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("checkout")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    required_keys = [
        "DATABASE_URL",
        "AUTH_URL",
        "MP_WEBHOOK_SECRET",
    ]

    missing = [key for key in required_keys if not getattr(cfg, key, None)]
    if missing:
        message = f"Missing required configuration: {', '.join(missing)}"
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)

    return True
