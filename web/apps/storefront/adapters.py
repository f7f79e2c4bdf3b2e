"""In-process stub adapters for the storefront ports.

These stubs implement the ports in ``domain`` without any network calls.
They are intended for unit tests and local development where
deterministic behavior is useful and external services are not required.
"""

import threading
import uuid
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from .domain import (
    CatalogPort,
    CheckoutAttempt,
    CheckoutStage,
    GeoLocationPort,
    IntentAlreadySettledError,
    KeyValueStorePort,
    NotificationPort,
    PaymentConfirmation,
    PaymentGatewayPort,
    PaymentIntent,
    Product,
    RateServicePort,
    RateUnavailableError,
    ReconciliationPort,
    UserLocation,
)

DEMO_PRODUCTS = (
    Product("prod_tee", "Classic Tee", Decimal("50.00"), {"S": 5, "M": 10, "L": 0}),
    Product("prod_hoodie", "Heavyweight Hoodie", Decimal("89.99"), {"M": 3, "L": 2, "XL": 1}),
    Product("prod_cap", "Logo Cap", Decimal("24.50"), {"OS": 25}),
)


class InMemoryKeyValueStore(KeyValueStorePort):
    """Dictionary-backed ``KeyValueStorePort``."""

    def __init__(self):
        self.data: Dict[Tuple[str, str], str] = {}

    def get(self, namespace: str, key: str) -> Optional[str]:
        return self.data.get((namespace, key))

    def set(self, namespace: str, key: str, value: str) -> None:
        self.data[(namespace, key)] = value

    def delete(self, namespace: str, key: str) -> None:
        self.data.pop((namespace, key), None)


class CatalogStub(CatalogPort):
    """Stub implementation of ``CatalogPort`` over an in-memory product list.

    Stock decrements are clamped at zero, like the real inventory service.
    """

    def __init__(self, products=DEMO_PRODUCTS):
        self._lock = threading.Lock()
        self._products: Dict[str, Product] = {p.id: p for p in products}
        self.decrements: List[Tuple[str, str, int]] = []

    def list_products(self) -> List[Product]:
        return list(self._products.values())

    def get_product(self, product_id: str) -> Optional[Product]:
        return self._products.get(product_id)

    def set_stock(self, product_id: str, size: str, quantity: int) -> None:
        p = self._products[product_id]
        stock = dict(p.stock)
        stock[size] = quantity
        self._products[product_id] = Product(p.id, p.name, p.price, stock, p.image_urls, p.category)

    def decrement_stock(self, product_id: str, size: str, quantity: int) -> int:
        with self._lock:
            p = self._products.get(product_id)
            if p is None:
                raise KeyError(product_id)
            remaining = max(0, p.stock_for(size) - quantity)
            self.set_stock(product_id, size, remaining)
            self.decrements.append((product_id, size, quantity))
            return remaining


class PaymentGatewayStub(PaymentGatewayPort):
    """Stub implementation of ``PaymentGatewayPort``.

    Approves every payment method except ``pm_card_declined``. Intents are
    kept in memory; creating with an already-seen idempotency key returns
    the original intent.
    """

    DECLINED = "pm_card_declined"

    def __init__(self):
        self.intents: Dict[str, dict] = {}
        self._by_key: Dict[str, str] = {}
        self.created = 0
        self.confirmed = 0

    def create_intent(self, amount_cents, currency, metadata, idempotency_key=None) -> PaymentIntent:
        if idempotency_key and idempotency_key in self._by_key:
            intent_id = self._by_key[idempotency_key]
            return PaymentIntent(intent_id, self.intents[intent_id]["secret"])
        intent_id = f"pi_{uuid.uuid4().hex[:24]}"
        secret = f"{intent_id}_secret_{uuid.uuid4().hex[:12]}"
        self.intents[intent_id] = {
            "secret": secret, "amount": amount_cents, "currency": currency,
            "metadata": dict(metadata), "status": "requires_payment_method",
        }
        if idempotency_key:
            self._by_key[idempotency_key] = intent_id
        self.created += 1
        return PaymentIntent(intent_id, secret)

    def update_intent(self, intent_id, amount_cents, currency, metadata) -> PaymentIntent:
        intent = self.intents.get(intent_id)
        if intent is None:
            raise ValueError("INTENT_NOT_FOUND")
        if intent["status"] == "succeeded":
            raise IntentAlreadySettledError(intent_id)
        intent.update(amount=amount_cents, currency=currency, metadata=dict(metadata))
        return PaymentIntent(intent_id, intent["secret"])

    def confirm_payment(self, client_secret, payment_method) -> PaymentConfirmation:
        intent = next((i for i in self.intents.values() if i["secret"] == client_secret), None)
        if intent is None:
            return PaymentConfirmation("requires_payment_method", "No such payment intent.")
        if payment_method == self.DECLINED:
            return PaymentConfirmation("requires_payment_method", "Your card was declined.")
        intent["status"] = "succeeded"
        self.confirmed += 1
        return PaymentConfirmation("succeeded")


class RateServiceStub(RateServicePort):
    """Fixed-table ``RateServicePort``; unknown pairs are unavailable."""

    def __init__(self, rates: Optional[Dict[Tuple[str, str], Decimal]] = None):
        self.rates = rates if rates is not None else {
            ("CAD", "USD"): Decimal("0.73"),
            ("CAD", "EUR"): Decimal("0.68"),
            ("CAD", "GBP"): Decimal("0.58"),
        }
        self.calls = 0

    def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        self.calls += 1
        try:
            return self.rates[(from_currency, to_currency)]
        except KeyError:
            raise RateUnavailableError(f"no rate for {from_currency}/{to_currency}")


class NotificationStub(NotificationPort):
    """Records notifications instead of sending them."""

    def __init__(self):
        self.sent: List[Tuple[str, dict]] = []

    def send(self, template: str, fields: dict) -> bool:
        self.sent.append((template, dict(fields)))
        return True


class GeoLocationStub(GeoLocationPort):
    def __init__(self, location: UserLocation = UserLocation("Canada", "CA", "CAD")):
        self.location = location

    def locate(self) -> UserLocation:
        return self.location


class InMemoryReconciliationLog(ReconciliationPort):
    """Collects reconciliation issues in a list."""

    def __init__(self):
        self.issues: List[dict] = []

    def report(self, attempt: CheckoutAttempt, stage: CheckoutStage, detail: str) -> None:
        self.issues.append({
            "attempt_id": attempt.attempt_id,
            "intent_id": attempt.intent_id,
            "stage": stage.value,
            "detail": detail,
        })
