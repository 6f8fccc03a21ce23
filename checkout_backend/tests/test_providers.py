"""Provider adapters against a scripted httpx.AsyncClient."""
from decimal import Decimal

import httpx
import pytest

from checkout_backend.core.config import MercadoPagoCredentials, PayPalCredentials
from checkout_backend.features.checkout import provider as provider_module
from checkout_backend.features.checkout.mercadopago_provider import MercadoPagoProvider, split_name
from checkout_backend.features.checkout.models import BackUrls, ChargeIntent
from checkout_backend.features.checkout.paypal_provider import PayPalProvider

from mocks import FakeAsyncClient


def _intent(token="tok123", amount="45000.5"):
    return ChargeIntent(
        amount=Decimal(amount),
        currency="ARS",
        title="Course 101",
        description="Intro",
        item_id="course-101",
        payer_email="ana@example.com",
        payer_name="Ana María Perez",
        correlation_token=token,
        back_urls=BackUrls(success="https://s", failure="https://f", pending="https://p"),
        notification_url="https://app.example.com/mercadopago/webhook?secret=x",
        metadata={"course_slug": "course-101"},
    )


@pytest.fixture
def scripted(monkeypatch):
    def install(*responses):
        calls = []
        monkeypatch.setattr(provider_module.httpx, "AsyncClient", FakeAsyncClient(list(responses), calls))
        return calls
    return install


def _mp():
    return MercadoPagoProvider(MercadoPagoCredentials(access_token="TEST-abc", mode="test"), timeout=5)


def _paypal():
    return PayPalProvider(PayPalCredentials(client_id="cid", client_secret="csecret", env="sandbox"), timeout=5)


def test_split_name():
    assert split_name("Ana María Perez", "Brand") == ("Ana", "María Perez")
    assert split_name("Ana", "Brand") == ("Ana", "Brand")
    assert split_name(None, "Brand") == ("Customer", "Brand")


def test_mercadopago_preference_shape():
    body = _mp().build_preference(_intent())
    assert body["external_reference"] == "tok123"
    assert body["binary_mode"] is True
    assert body["items"][0]["unit_price"] == 45000.5
    assert body["items"][0]["quantity"] == 1
    assert body["back_urls"] == {"success": "https://s", "failure": "https://f", "pending": "https://p"}
    assert body["notification_url"].endswith("?secret=x")
    assert body["payer"]["email"] == "ana@example.com"


@pytest.mark.asyncio
async def test_mercadopago_create_charge_success(scripted):
    calls = scripted((201, {"id": "pref-1", "init_point": "https://mp.example/init"}))
    result = await _mp().create_charge(_intent())
    assert result.success
    assert result.provider_reference == "pref-1"
    assert result.redirect_url == "https://mp.example/init"
    assert calls[0]["url"] == "https://api.mercadopago.com/checkout/preferences"
    assert calls[0]["headers"]["Authorization"] == "Bearer TEST-abc"


@pytest.mark.asyncio
async def test_mercadopago_error_status_is_passed_through(scripted):
    calls = scripted((400, {"message": "invalid unit_price"}))
    result = await _mp().create_charge(_intent())
    assert not result.success
    assert result.status == 400
    assert result.error == "invalid unit_price"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_mercadopago_timeout_is_provider_error_without_retry(scripted):
    calls = scripted(httpx.ReadTimeout("slow"))
    result = await _mp().create_charge(_intent())
    assert not result.success
    assert result.status == 504
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_mercadopago_fetch_payment(scripted):
    scripted((200, {"id": 987, "status": "approved", "external_reference": "tok", "transaction_amount": 100.5, "currency_id": "ARS"}))
    payment = await _mp().fetch_payment("987")
    assert payment.id == "987"
    assert payment.approved
    assert payment.amount == Decimal("100.5")


@pytest.mark.asyncio
async def test_paypal_create_order(scripted):
    calls = scripted(
        (200, {"access_token": "A21"}),
        (201, {"id": "ORDER-1", "links": [{"rel": "self", "href": "x"}, {"rel": "approve", "href": "https://pp/approve"}]}),
    )
    result = await _paypal().create_charge(_intent())
    assert result.success
    assert result.provider_reference == "ORDER-1"
    assert result.redirect_url == "https://pp/approve"

    assert calls[0]["url"] == "https://api-m.sandbox.paypal.com/v1/oauth2/token"
    order = calls[1]["json"]
    assert order["intent"] == "CAPTURE"
    assert order["purchase_units"][0]["custom_id"] == "tok123"
    assert order["purchase_units"][0]["amount"] == {"currency_code": "ARS", "value": "45000.50"}
    assert order["application_context"]["return_url"] == "https://s"
    assert order["application_context"]["cancel_url"] == "https://f"


@pytest.mark.asyncio
async def test_paypal_rejects_oversized_custom_id_before_calling(scripted):
    calls = scripted()
    result = await _paypal().create_charge(_intent(token="x" * 128))
    assert not result.success
    assert result.status == 500
    assert calls == []


@pytest.mark.asyncio
async def test_paypal_auth_failure_surfaces_status(scripted):
    scripted((401, {"error": "invalid_client", "error_description": "Client Authentication failed"}))
    result = await _paypal().create_charge(_intent())
    assert not result.success
    assert result.status == 401


@pytest.mark.asyncio
async def test_paypal_capture_completed(scripted):
    captured = {
        "id": "ORDER-1",
        "status": "COMPLETED",
        "purchase_units": [{
            "payments": {"captures": [{
                "id": "CAP-1",
                "status": "COMPLETED",
                "custom_id": "tok123",
                "amount": {"value": "45000.50", "currency_code": "ARS"},
            }]},
        }],
    }
    scripted((200, {"access_token": "A21"}), (201, captured))
    result = await _paypal().capture_charge("ORDER-1")
    assert result.success
    assert result.capture_id == "CAP-1"
    assert result.custom_id == "tok123"
    assert result.amount == Decimal("45000.50")


@pytest.mark.asyncio
async def test_paypal_already_captured_order_is_read_back(scripted):
    order = {
        "id": "ORDER-1",
        "purchase_units": [{"custom_id": "tok123", "payments": {"captures": [{"id": "CAP-1", "status": "COMPLETED"}]}}],
    }
    calls = scripted(
        (200, {"access_token": "A21"}),
        (422, '{"name":"UNPROCESSABLE_ENTITY","details":[{"issue":"ORDER_ALREADY_CAPTURED"}]}'),
        (200, order),
    )
    result = await _paypal().capture_charge("ORDER-1")
    assert result.success
    assert result.custom_id == "tok123"
    assert calls[-1]["method"] == "GET"


@pytest.mark.asyncio
async def test_paypal_declined_capture_is_failure(scripted):
    declined = {"purchase_units": [{"payments": {"captures": [{"id": "CAP-2", "status": "DECLINED"}]}}]}
    scripted((200, {"access_token": "A21"}), (201, declined))
    result = await _paypal().capture_charge("ORDER-2")
    assert not result.success
    assert result.capture_status == "DECLINED"
