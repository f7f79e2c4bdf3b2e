"""Unit tests for the HTTP adapters.

``httpx.Client.get`` / ``httpx.Client.post`` are monkeypatched so no
request leaves the process; the tests assert the wire format sent and the
mapping of responses to domain values.
"""

from decimal import Decimal

import httpx
import pytest

from apps.storefront.domain import IntentAlreadySettledError, RateUnavailableError
from apps.storefront.http_adapters import (
    HttpBackendRateClient,
    HttpCatalogClient,
    HttpExchangeRateClient,
    HttpGeoLocationClient,
    HttpNotificationClient,
    HttpPaymentGatewayClient,
)

TEE_JSON = {
    "id": "prod_tee", "name": "Classic Tee", "category": "tops", "price": "50.00",
    "image_urls": ["https://img/tee.png"], "stock": {"S": 5, "M": 10},
}


class DummyResp:
    """Minimal httpx-like response stub."""

    def __init__(self, status_code=200, json_data=None):
        self.status_code = status_code
        self._json = json_data if json_data is not None else {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise httpx.HTTPStatusError("err", request=None, response=None)

    def json(self):
        return self._json


@pytest.fixture
def recorder(monkeypatch):
    """Patch httpx so every call is recorded and answered from ``responses``."""
    calls = []
    responses = []

    def fake(method):
        def _call(self, url, json=None, params=None, headers=None, **kw):
            calls.append({"method": method, "url": url, "json": json, "params": params, "headers": headers or {}})
            answer = responses.pop(0)
            if isinstance(answer, Exception):
                raise answer
            return answer
        return _call

    monkeypatch.setattr(httpx.Client, "get", fake("GET"), raising=True)
    monkeypatch.setattr(httpx.Client, "post", fake("POST"), raising=True)
    return calls, responses


def test_catalog_list_and_get(recorder):
    calls, responses = recorder
    responses += [DummyResp(200, [TEE_JSON]), DummyResp(200, TEE_JSON)]
    client = HttpCatalogClient(base_url="http://inventory:8001")

    products = client.list_products()
    product = client.get_product("prod_tee")

    assert products[0].price == Decimal("50.00")
    assert products[0].stock_for("M") == 10
    assert product.image_urls == ("https://img/tee.png",)
    assert calls[1]["url"] == "http://inventory:8001/products/prod_tee"


def test_catalog_unknown_product_is_none(recorder):
    _, responses = recorder
    responses.append(DummyResp(404, {"detail": "PRODUCT_NOT_FOUND"}))
    assert HttpCatalogClient(base_url="http://x").get_product("gone") is None


def test_decrement_sent_once_even_on_5xx(recorder):
    calls, responses = recorder
    responses += [DummyResp(503), DummyResp(200, {"remaining": 0})]

    with pytest.raises(httpx.HTTPStatusError):
        HttpCatalogClient(base_url="http://x").decrement_stock("prod_tee", "M", 2)

    assert len(calls) == 1
    assert calls[0]["json"] == {"product_id": "prod_tee", "size": "M", "quantity": 2}


def test_decrement_returns_remaining(recorder):
    _, responses = recorder
    responses.append(DummyResp(200, {"product_id": "prod_tee", "size": "M", "remaining": 7}))
    assert HttpCatalogClient(base_url="http://x").decrement_stock("prod_tee", "M", 3) == 7


def test_create_intent_sends_idempotency_key(recorder):
    calls, responses = recorder
    responses.append(DummyResp(200, {"intent_id": "pi_1", "client_secret": "pi_1_secret"}))

    intent = HttpPaymentGatewayClient(base_url="http://pay").create_intent(
        10200, "CAD", {"attempt_id": "a1"}, idempotency_key="a1-1"
    )

    assert intent.intent_id == "pi_1" and intent.client_secret == "pi_1_secret"
    assert calls[0]["headers"]["Idempotency-Key"] == "a1-1"
    assert calls[0]["json"]["amount_cents"] == 10200


def test_update_settled_intent_raises_already_settled(recorder):
    _, responses = recorder
    responses.append(DummyResp(409, {"detail": "INTENT_ALREADY_SUCCEEDED"}))
    with pytest.raises(IntentAlreadySettledError) as exc:
        HttpPaymentGatewayClient(base_url="http://pay").update_intent("pi_1", 100, "CAD", {})
    assert exc.value.intent_id == "pi_1"


def test_update_unknown_intent_is_not_reported_as_settled(recorder):
    _, responses = recorder
    responses.append(DummyResp(404, {"detail": "INTENT_NOT_FOUND"}))
    with pytest.raises(ValueError) as exc:
        HttpPaymentGatewayClient(base_url="http://pay").update_intent("pi_1", 100, "CAD", {})
    assert not isinstance(exc.value, IntentAlreadySettledError)


def test_confirm_decline_carries_gateway_message(recorder):
    _, responses = recorder
    responses.append(DummyResp(402, {"status": "requires_payment_method", "message": "Your card was declined."}))

    confirmation = HttpPaymentGatewayClient(base_url="http://pay").confirm_payment("secret", "pm_card_declined")

    assert confirmation.settled is False
    assert confirmation.message == "Your card was declined."


def test_confirm_success(recorder):
    calls, responses = recorder
    responses.append(DummyResp(200, {"status": "succeeded", "message": ""}))
    assert HttpPaymentGatewayClient(base_url="http://pay").confirm_payment("secret", "pm_card_visa").settled
    assert calls[0]["url"] == "http://pay/intents/confirm"


def test_exchange_rate_client(recorder):
    calls, responses = recorder
    responses.append(DummyResp(200, {"result": "success", "conversion_rate": 0.7321}))

    rate = HttpExchangeRateClient(api_key="k", base_url="https://fx").get_rate("CAD", "USD")

    assert rate == Decimal("0.7321")
    assert calls[0]["url"] == "https://fx/k/pair/CAD/USD"


def test_exchange_rate_client_error_result(recorder):
    _, responses = recorder
    responses.append(DummyResp(200, {"result": "error", "error-type": "unsupported-code"}))
    with pytest.raises(RateUnavailableError):
        HttpExchangeRateClient(api_key="k", base_url="https://fx").get_rate("CAD", "ZZZ")


def test_exchange_rate_client_without_key_makes_no_call(recorder):
    calls, _ = recorder
    with pytest.raises(RateUnavailableError):
        HttpExchangeRateClient(api_key="").get_rate("CAD", "USD")
    assert calls == []


def test_backend_rate_client(recorder):
    calls, responses = recorder
    responses.append(DummyResp(200, {"rate": 0.68, "from": "CAD", "to": "EUR", "cached": True}))

    assert HttpBackendRateClient(url="http://web/api/rates").get_rate("CAD", "EUR") == Decimal("0.68")
    assert calls[0]["params"] == {"from": "CAD", "to": "EUR"}


def test_notification_payload(recorder):
    calls, responses = recorder
    responses.append(DummyResp(200))

    ok = HttpNotificationClient(url="http://mail", service_id="svc", user_id="usr").send(
        "order_confirmation", {"name": "Ada"}
    )

    assert ok is True
    assert calls[0]["json"] == {
        "service_id": "svc",
        "template_id": "order_confirmation",
        "user_id": "usr",
        "template_params": {"name": "Ada"},
    }


def test_geolocation_client(recorder):
    _, responses = recorder
    responses.append(DummyResp(200, {"country_name": "Germany", "country_code": "DE", "currency": "EUR"}))

    loc = HttpGeoLocationClient(url="http://geo").locate()

    assert (loc.country, loc.country_code, loc.currency) == ("Germany", "DE", "EUR")


def test_network_error_propagates(recorder, settings):
    settings.HTTP_RETRY_MAX = 2
    _, responses = recorder
    responses += [httpx.ConnectError("boom"), httpx.ConnectError("boom")]
    with pytest.raises(httpx.ConnectError):
        HttpPaymentGatewayClient(base_url="http://pay").create_intent(100, "CAD", {})
