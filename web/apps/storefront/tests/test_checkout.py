"""Checkout orchestrator tests.

Covers the happy path, declines, intent reuse, and the partial-failure
states after the payment has settled (stock or notification failing),
including resuming an attempt without charging or decrementing twice.
"""

from decimal import Decimal

import pytest

from apps.storefront.adapters import (
    CatalogStub,
    InMemoryKeyValueStore,
    InMemoryReconciliationLog,
    NotificationStub,
    PaymentGatewayStub,
)
from apps.storefront.cart import CartStore
from apps.storefront.checkout import SUCCESS_MESSAGE, CheckoutOrchestrator
from apps.storefront.domain import (
    CheckoutStage,
    CheckoutValidationError,
    ContactInfo,
    Destination,
    IntentAlreadySettledError,
    IntentUnavailableError,
    PaymentFailedError,
    Product,
)

PRODUCT_A = Product("prod_a", "Product A", Decimal("50.00"), {"M": 10, "L": 4})
CONTACT = ContactInfo("Ada Lovelace", "ada@example.com", "555-0100")
LOCAL = Destination(country="CA", region="ON", city="Toronto", address="1 King St W", postal_code="M5H 1A1")


class FlakyCatalog(CatalogStub):
    """Catalog whose stock decrements fail while ``down`` is set."""

    def __init__(self, products):
        super().__init__(products)
        self.down = False

    def decrement_stock(self, product_id, size, quantity):
        if self.down:
            raise ConnectionError("inventory unreachable")
        return super().decrement_stock(product_id, size, quantity)


class FailingNotifier(NotificationStub):
    def __init__(self):
        super().__init__()
        self.down = True

    def send(self, template, fields):
        if self.down:
            raise TimeoutError("mail provider timed out")
        return super().send(template, fields)


class UnavailableGateway(PaymentGatewayStub):
    def create_intent(self, amount_cents, currency, metadata, idempotency_key=None):
        raise ConnectionError("payments down")


class LostConfirmationGateway(PaymentGatewayStub):
    """Captures the payment, then times out before answering, once."""

    def __init__(self):
        super().__init__()
        self.drop_next = True

    def confirm_payment(self, client_secret, payment_method):
        confirmation = super().confirm_payment(client_secret, payment_method)
        if self.drop_next:
            self.drop_next = False
            raise TimeoutError("read timed out")
        return confirmation


class Env:
    def __init__(self, catalog=None, gateway=None, notifier=None, kv=None, cart_id="cart-1"):
        self.kv = kv or InMemoryKeyValueStore()
        self.catalog = catalog or FlakyCatalog([PRODUCT_A])
        self.gateway = gateway or PaymentGatewayStub()
        self.notifier = notifier or NotificationStub()
        self.reconciliation = InMemoryReconciliationLog()
        self.cart = CartStore(cart_id, self.kv, self.catalog)
        self.orchestrator = CheckoutOrchestrator(
            cart=self.cart,
            gateway=self.gateway,
            catalog=self.catalog,
            notifier=self.notifier,
            store=self.kv,
            reconciliation=self.reconciliation,
        )

    def fill(self, size="M", quantity=2):
        for _ in range(quantity):
            assert self.cart.add_line(PRODUCT_A, size)

    def checkout(self, payment_method="pm_card_visa", destination=LOCAL, contact=CONTACT):
        return self.orchestrator.checkout(contact, destination, payment_method)


@pytest.fixture
def env():
    return Env()


def test_successful_checkout(env):
    env.fill("M", 2)

    result = env.checkout()

    assert result.success is True
    assert result.message == SUCCESS_MESSAGE
    assert result.attempt.stage == CheckoutStage.COMPLETE
    assert result.reconciliation_pending is False
    totals = result.attempt.totals
    assert (totals.subtotal, totals.tax, totals.shipping, totals.total) == (
        Decimal("100.00"), Decimal("2.00"), Decimal("0.00"), Decimal("102.00"),
    )
    assert env.cart.get() == ()
    assert env.catalog.get_product("prod_a").stock_for("M") == 8
    intent = env.gateway.intents[result.attempt.intent_id]
    assert intent["amount"] == 10200 and intent["currency"] == "CAD"
    assert env.gateway.confirmed == 1


def test_confirmation_sent_with_order_fields(env):
    env.fill("M", 2)
    env.checkout()

    template, fields = env.notifier.sent[0]
    assert template == "order_confirmation"
    assert fields["name"] == "Ada Lovelace"
    assert fields["email"] == "ada@example.com"
    assert fields["order"] == "2x Product A (Size: M)"
    assert fields["total"] == "102.00"
    assert "Toronto" in fields["address"]
    assert fields["stock_reconciled"] is True


def test_duplicate_lines_coalesced_into_one_decrement(env):
    env.fill("M", 1)
    env.fill("L", 3)
    env.checkout()

    assert sorted(env.catalog.decrements) == [("prod_a", "L", 3), ("prod_a", "M", 1)]


@pytest.mark.parametrize(
    "kwargs, code",
    [
        ({"destination": Destination()}, "MISSING_DESTINATION"),
        ({"contact": ContactInfo("", "")}, "MISSING_CONTACT"),
        ({"payment_method": ""}, "INVALID_PAYMENT_METHOD"),
    ],
)
def test_validation_errors_have_no_side_effects(env, kwargs, code):
    env.fill("M", 1)

    with pytest.raises(CheckoutValidationError) as exc:
        env.checkout(**kwargs)

    assert exc.value.code == code
    assert env.gateway.created == 0
    assert len(env.cart.get()) == 1


def test_empty_cart_rejected(env):
    with pytest.raises(CheckoutValidationError) as exc:
        env.checkout()
    assert exc.value.code == "EMPTY_CART"
    assert env.gateway.created == 0


def test_declined_payment_returns_to_idle_and_keeps_cart(env):
    env.fill("M", 2)

    with pytest.raises(PaymentFailedError) as exc:
        env.checkout(payment_method="pm_card_declined")

    assert exc.value.message == "Your card was declined."
    attempt = env.orchestrator.active_attempt()
    assert attempt.stage == CheckoutStage.IDLE
    assert attempt.failed_stage == CheckoutStage.PAYMENT_CONFIRMING
    assert attempt.settled is False
    assert len(env.cart.get()) == 1
    assert env.catalog.decrements == []
    assert env.notifier.sent == []


def test_retry_after_decline_reuses_intent(env):
    env.fill("M", 2)
    with pytest.raises(PaymentFailedError):
        env.checkout(payment_method="pm_card_declined")
    env.cart.add_line(PRODUCT_A, "M")

    result = env.checkout()

    assert env.gateway.created == 1
    assert env.gateway.intents[result.attempt.intent_id]["amount"] == 15300
    assert result.attempt.stage == CheckoutStage.COMPLETE


def test_intent_recreated_when_update_refused(env):
    env.fill("M", 1)
    with pytest.raises(PaymentFailedError):
        env.checkout(payment_method="pm_card_declined")
    stale_id = env.orchestrator.active_attempt().intent_id
    env.gateway.intents.pop(stale_id)

    result = env.checkout()

    assert result.attempt.intent_id != stale_id
    assert result.attempt.intent_generation == 2
    assert env.gateway.created == 2


def test_intent_unavailable():
    env = Env(gateway=UnavailableGateway())
    env.fill("M", 1)

    with pytest.raises(IntentUnavailableError):
        env.checkout()

    attempt = env.orchestrator.active_attempt()
    assert attempt.stage == CheckoutStage.FAILED
    assert attempt.failed_stage == CheckoutStage.INTENT_PENDING
    assert len(env.cart.get()) == 1


def test_stock_failure_after_payment_is_reported_not_raised(env):
    env.fill("M", 2)
    env.catalog.down = True

    result = env.checkout()

    assert result.success is True
    assert result.reconciliation_pending is True
    assert result.attempt.stage == CheckoutStage.FAILED
    assert result.attempt.failed_stage == CheckoutStage.STOCK_UPDATING
    assert env.cart.get() == ()
    assert env.gateway.confirmed == 1
    assert env.reconciliation.issues[0]["stage"] == "STOCK_UPDATING"
    # the customer is still notified, flagged as not reconciled
    assert env.notifier.sent[0][1]["stock_reconciled"] is False


def test_resume_finishes_stock_without_charging_again(env):
    env.fill("M", 2)
    env.catalog.down = True
    attempt_id = env.checkout().attempt.attempt_id

    env.catalog.down = False
    result = env.orchestrator.resume(attempt_id)

    assert result.attempt.stage == CheckoutStage.COMPLETE
    assert env.gateway.created == 1 and env.gateway.confirmed == 1
    assert env.catalog.decrements == [("prod_a", "M", 2)]
    assert len(env.notifier.sent) == 1


def test_resume_skips_keys_already_decremented():
    catalog = FlakyCatalog([PRODUCT_A])
    env = Env(catalog=catalog)
    env.fill("M", 1)
    env.fill("L", 1)

    calls = {"n": 0}
    real = CatalogStub.decrement_stock

    def fail_second(self, product_id, size, quantity):
        calls["n"] += 1
        if calls["n"] == 2:
            raise ConnectionError("dropped")
        return real(self, product_id, size, quantity)

    catalog.decrement_stock = fail_second.__get__(catalog)
    attempt_id = env.checkout().attempt.attempt_id
    assert env.orchestrator.load_attempt(attempt_id).decremented == ["prod_a|M"]

    del catalog.decrement_stock
    env.orchestrator.resume(attempt_id)

    assert env.catalog.decrements == [("prod_a", "M", 1), ("prod_a", "L", 1)]


def test_notification_failure_is_not_fatal():
    env = Env(notifier=FailingNotifier())
    env.fill("M", 1)

    result = env.checkout()

    assert result.success is True
    assert result.attempt.failed_stage == CheckoutStage.NOTIFYING
    assert result.reconciliation_pending is True
    assert env.cart.get() == ()
    assert env.catalog.decrements == [("prod_a", "M", 1)]
    assert env.reconciliation.issues[0]["stage"] == "NOTIFYING"

    env.notifier.down = False
    resumed = env.orchestrator.resume(result.attempt.attempt_id)
    assert resumed.attempt.stage == CheckoutStage.COMPLETE
    assert len(env.notifier.sent) == 1
    assert env.catalog.decrements == [("prod_a", "M", 1)]


def test_settled_attempt_is_never_charged_twice(env):
    env.fill("M", 1)

    # simulate an interruption right after the payment settled
    def crash(attempt, clear_cart):
        raise RuntimeError("worker killed")

    env.orchestrator._finish = crash
    with pytest.raises(RuntimeError):
        env.checkout()
    del env.orchestrator._finish

    result = env.checkout()

    assert result.attempt.stage == CheckoutStage.COMPLETE
    assert env.gateway.created == 1 and env.gateway.confirmed == 1
    assert env.catalog.decrements == [("prod_a", "M", 1)]
    assert env.cart.get() == ()


def test_resume_validation(env):
    with pytest.raises(CheckoutValidationError) as exc:
        env.orchestrator.resume("nope")
    assert exc.value.code == "UNKNOWN_ATTEMPT"

    env.fill("M", 1)
    with pytest.raises(PaymentFailedError):
        env.checkout(payment_method="pm_card_declined")
    with pytest.raises(CheckoutValidationError) as exc:
        env.orchestrator.resume(env.orchestrator.active_attempt().attempt_id)
    assert exc.value.code == "ATTEMPT_NOT_SETTLED"


def test_resume_of_completed_attempt_is_a_no_op(env):
    env.fill("M", 1)
    attempt_id = env.checkout().attempt.attempt_id

    result = env.orchestrator.resume(attempt_id)

    assert result.attempt.stage == CheckoutStage.COMPLETE
    assert len(env.catalog.decrements) == 1
    assert len(env.notifier.sent) == 1


def test_retry_after_lost_confirmation_does_not_charge_again():
    env = Env(gateway=LostConfirmationGateway())
    env.fill("M", 2)
    with pytest.raises(PaymentFailedError):
        env.checkout()
    assert env.gateway.confirmed == 1
    # the customer keeps shopping before pressing pay again
    env.cart.add_line(PRODUCT_A, "L")

    result = env.checkout()

    assert result.success is True
    assert result.attempt.stage == CheckoutStage.COMPLETE
    assert result.attempt.settled is True
    assert env.gateway.created == 1 and env.gateway.confirmed == 1
    # the order recorded is the one that was charged
    assert result.attempt.totals.total == Decimal("102.00")
    assert env.catalog.decrements == [("prod_a", "M", 2)]
    assert env.cart.get() == ()


def test_stub_refuses_update_of_captured_intent(env):
    intent = env.gateway.create_intent(100, "CAD", {})
    env.gateway.confirm_payment(intent.client_secret, "pm_card_visa")

    with pytest.raises(IntentAlreadySettledError):
        env.gateway.update_intent(intent.intent_id, 200, "CAD", {})


def test_resume_rejects_attempt_from_another_cart():
    owner = Env(cart_id="cart-owner")
    owner.fill("M", 1)
    owner.catalog.down = True
    attempt_id = owner.checkout().attempt.attempt_id
    owner.catalog.down = False

    other = Env(kv=owner.kv, catalog=owner.catalog, gateway=owner.gateway, cart_id="cart-other")
    other.fill("L", 1)

    with pytest.raises(CheckoutValidationError) as exc:
        other.orchestrator.resume(attempt_id)

    assert exc.value.code == "UNKNOWN_ATTEMPT"
    assert len(other.cart.get()) == 1
    assert owner.catalog.decrements == []
    assert owner.orchestrator.load_attempt(attempt_id).cart_id == "cart-owner"
