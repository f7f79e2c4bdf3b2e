"""Checkout orchestration.

One checkout attempt moves through

    IDLE -> INTENT_PENDING -> PAYMENT_CONFIRMING -> STOCK_UPDATING
         -> NOTIFYING -> COMPLETE

with ``FAILED`` reachable from every non-idle stage. Steps run strictly in
sequence. Only the intent step is retried automatically (update in place,
then create). Failures after the payment settled never surface as payment
failures: they are recorded on the attempt, logged on the reconciliation
logger and queued for manual follow-up, while the customer still sees a
successful order.

The attempt is persisted after every transition so a user-initiated retry
reuses the settled intent and skips stock already decremented.
"""

import json
import logging
import uuid
from collections import OrderedDict
from typing import Callable, Optional

from .cart import CartStore
from .domain import (
    CatalogPort,
    CheckoutAttempt,
    CheckoutResult,
    CheckoutStage,
    CheckoutValidationError,
    ContactInfo,
    Destination,
    IntentAlreadySettledError,
    IntentUnavailableError,
    KeyValueStorePort,
    NotificationPort,
    OrderLine,
    PaymentConfirmation,
    PaymentFailedError,
    PaymentGatewayPort,
    ReconciliationPort,
)
from .schemas import PersistedAttempt

logger = logging.getLogger("storefront.checkout")
reconciliation_logger = logging.getLogger("storefront.reconciliation")

ATTEMPT_NAMESPACE = "checkout_attempt"
SUCCESS_MESSAGE = "Payment successful! Thank you for your order."


def stock_key(product_id: str, size: str) -> str:
    return f"{product_id}|{size}"


class CheckoutOrchestrator:
    """Drives payment, stock decrement and notification for one cart.

    Args:
        cart: Cart being checked out; cleared once the order is paid.
        gateway: Payment gateway.
        catalog: Inventory backend used to decrement stock.
        notifier: Order-confirmation notification service.
        store: Key-value store persisting attempts.
        reconciliation: Queue receiving post-payment failures.
        notify_template: Template identifier passed to ``notifier.send``.
        id_factory: Generates attempt ids.
    """

    def __init__(
        self,
        cart: CartStore,
        gateway: PaymentGatewayPort,
        catalog: CatalogPort,
        notifier: NotificationPort,
        store: KeyValueStorePort,
        reconciliation: ReconciliationPort,
        notify_template: str = "order_confirmation",
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ):
        self.cart = cart
        self.gateway = gateway
        self.catalog = catalog
        self.notifier = notifier
        self.store = store
        self.reconciliation = reconciliation
        self.notify_template = notify_template
        self.id_factory = id_factory

    # ---- attempt persistence ----
    def _active_key(self, cart_id: Optional[str] = None) -> str:
        return f"active:{cart_id or self.cart.cart_id}"

    def load_attempt(self, attempt_id: str) -> Optional[CheckoutAttempt]:
        raw = self.store.get(ATTEMPT_NAMESPACE, attempt_id)
        if not raw:
            return None
        try:
            return PersistedAttempt.model_validate(json.loads(raw)).to_domain()
        except ValueError:
            logger.error("unreadable checkout attempt", extra={"attempt_id": attempt_id})
            return None

    def active_attempt(self) -> Optional[CheckoutAttempt]:
        """Return the in-progress attempt for this cart, if any."""
        attempt_id = self.store.get(ATTEMPT_NAMESPACE, self._active_key())
        return self.load_attempt(attempt_id) if attempt_id else None

    def _save(self, attempt: CheckoutAttempt) -> None:
        body = PersistedAttempt.from_domain(attempt).model_dump_json()
        self.store.set(ATTEMPT_NAMESPACE, attempt.attempt_id, body)

    def _transition(self, attempt: CheckoutAttempt, stage: CheckoutStage) -> None:
        logger.info(
            "checkout stage %s -> %s", attempt.stage.value, stage.value,
            extra={"attempt_id": attempt.attempt_id, "intent_id": attempt.intent_id},
        )
        attempt.stage = stage
        self._save(attempt)

    # ---- entry points ----
    def checkout(self, contact: ContactInfo, destination: Destination, payment_method: str) -> CheckoutResult:
        """Run a checkout for the current cart contents.

        Raises:
            CheckoutValidationError: Empty cart or missing form data; nothing
                was sent anywhere.
            IntentUnavailableError: No payment intent could be obtained.
            PaymentFailedError: Gateway declined or could not confirm; the
                attempt is back to IDLE and the cart is untouched.
        """
        lines = self.cart.get()
        if not lines:
            raise CheckoutValidationError("EMPTY_CART")
        if not destination or not destination.country:
            raise CheckoutValidationError("MISSING_DESTINATION")
        if not contact or not contact.name or not contact.email:
            raise CheckoutValidationError("MISSING_CONTACT")
        if not payment_method:
            raise CheckoutValidationError("INVALID_PAYMENT_METHOD")

        attempt = self.active_attempt()
        if attempt is not None and attempt.settled:
            # paid but interrupted before completion: never charge again
            return self._finish(attempt, clear_cart=True)
        if attempt is None:
            attempt = CheckoutAttempt(attempt_id=self.id_factory(), cart_id=self.cart.cart_id)
            self.store.set(ATTEMPT_NAMESPACE, self._active_key(), attempt.attempt_id)

        previous = (attempt.lines, attempt.totals, attempt.destination, attempt.contact)
        self.cart.set_destination(destination)
        attempt.lines = [
            OrderLine(line.product_id, line.product.name, line.size, line.quantity, line.product.price)
            for line in lines
        ]
        attempt.totals = self.cart.totals(destination)
        attempt.destination = destination
        attempt.contact = contact

        if self._ensure_intent(attempt):
            # captured on an earlier try whose confirmation was lost
            if previous[1] is not None:
                attempt.lines, attempt.totals, attempt.destination, attempt.contact = previous
            return self._finish(attempt, clear_cart=True)
        self._confirm(attempt, payment_method)
        return self._finish(attempt, clear_cart=True)

    def resume(self, attempt_id: str) -> CheckoutResult:
        """Retry the post-payment steps of a settled attempt.

        Never re-charges and never decrements a (product, size) twice for
        the same attempt. Only attempts started from this cart can be
        resumed; any other id is reported as unknown.
        """
        attempt = self.load_attempt(attempt_id)
        if attempt is None or attempt.cart_id != self.cart.cart_id:
            raise CheckoutValidationError("UNKNOWN_ATTEMPT")
        if not attempt.settled:
            raise CheckoutValidationError("ATTEMPT_NOT_SETTLED")
        if attempt.stage == CheckoutStage.COMPLETE and attempt.notified:
            return CheckoutResult(attempt, success=True, message=SUCCESS_MESSAGE)
        interrupted = attempt.stage not in (CheckoutStage.COMPLETE, CheckoutStage.FAILED)
        return self._finish(attempt, clear_cart=interrupted)

    # ---- step 1: intent ----
    def _intent_metadata(self, attempt: CheckoutAttempt) -> dict:
        return {
            "attempt_id": attempt.attempt_id,
            "email": attempt.contact.email,
            "order": ", ".join(line.label for line in attempt.lines),
        }

    def _ensure_intent(self, attempt: CheckoutAttempt) -> bool:
        """Update or create the intent; True when the gateway reports it already captured."""
        self._transition(attempt, CheckoutStage.INTENT_PENDING)
        amount = attempt.totals.total_cents
        currency = attempt.totals.currency
        metadata = self._intent_metadata(attempt)

        if attempt.intent_id:
            try:
                intent = self.gateway.update_intent(attempt.intent_id, amount, currency, metadata)
                attempt.intent_id, attempt.client_secret = intent.intent_id, intent.client_secret
                self._save(attempt)
                return False
            except IntentAlreadySettledError:
                attempt.settled = True
                attempt.failed_stage = None
                self._save(attempt)
                logger.warning(
                    "intent already captured, skipping payment",
                    extra={"attempt_id": attempt.attempt_id, "intent_id": attempt.intent_id},
                )
                return True
            except Exception as e:
                logger.warning(
                    "intent update failed, creating a new intent",
                    extra={"attempt_id": attempt.attempt_id, "intent_id": attempt.intent_id, "error": str(e)},
                )

        attempt.intent_generation += 1
        idem_key = f"{attempt.attempt_id}-{attempt.intent_generation}"
        try:
            intent = self.gateway.create_intent(amount, currency, metadata, idempotency_key=idem_key)
        except Exception as e:
            logger.error("intent creation failed", extra={"attempt_id": attempt.attempt_id, "error": str(e)})
            attempt.failed_stage = CheckoutStage.INTENT_PENDING
            self._transition(attempt, CheckoutStage.FAILED)
            raise IntentUnavailableError(str(e))
        attempt.intent_id, attempt.client_secret = intent.intent_id, intent.client_secret
        self._save(attempt)
        return False

    # ---- step 2: payment ----
    def _confirm(self, attempt: CheckoutAttempt, payment_method: str) -> None:
        self._transition(attempt, CheckoutStage.PAYMENT_CONFIRMING)
        try:
            confirmation = self.gateway.confirm_payment(attempt.client_secret, payment_method)
        except Exception as e:
            confirmation = PaymentConfirmation("error", str(e) or "Payment gateway unavailable")
        if not confirmation.settled:
            self._payment_failed(attempt, confirmation.message or "Payment not successful")
        attempt.settled = True
        attempt.failed_stage = None
        self._save(attempt)
        logger.info("payment settled", extra={"attempt_id": attempt.attempt_id, "intent_id": attempt.intent_id})

    def _payment_failed(self, attempt: CheckoutAttempt, message: str) -> None:
        logger.info(
            "payment failed",
            extra={"attempt_id": attempt.attempt_id, "intent_id": attempt.intent_id, "gateway_message": message},
        )
        attempt.failed_stage = CheckoutStage.PAYMENT_CONFIRMING
        self._transition(attempt, CheckoutStage.IDLE)
        raise PaymentFailedError(message)

    # ---- steps 3-5: post-payment ----
    def _finish(self, attempt: CheckoutAttempt, clear_cart: bool) -> CheckoutResult:
        self._transition(attempt, CheckoutStage.STOCK_UPDATING)
        stock_ok = self._update_stock(attempt)
        self._transition(attempt, CheckoutStage.NOTIFYING)
        self._send_confirmation(attempt, stock_ok)

        if clear_cart:
            self.cart.clear()
        self.store.delete(ATTEMPT_NAMESPACE, self._active_key(attempt.cart_id))

        if not stock_ok:
            attempt.failed_stage = CheckoutStage.STOCK_UPDATING
            self._transition(attempt, CheckoutStage.FAILED)
        elif not attempt.notified:
            attempt.failed_stage = CheckoutStage.NOTIFYING
            self._transition(attempt, CheckoutStage.FAILED)
        else:
            attempt.failed_stage = None
            self._transition(attempt, CheckoutStage.COMPLETE)
        return CheckoutResult(attempt, success=True, message=SUCCESS_MESSAGE)

    def _post_payment_failure(self, attempt: CheckoutAttempt, stage: CheckoutStage, detail: str) -> None:
        attempt.errors.append(f"{stage.value}: {detail}")
        self._save(attempt)
        reconciliation_logger.error(
            "post-payment step failed, manual reconciliation required",
            extra={
                "attempt_id": attempt.attempt_id,
                "intent_id": attempt.intent_id,
                "stage": stage.value,
                "detail": detail,
            },
        )
        try:
            self.reconciliation.report(attempt, stage, detail)
        except Exception:
            reconciliation_logger.exception(
                "could not queue reconciliation issue", extra={"attempt_id": attempt.attempt_id}
            )

    def _update_stock(self, attempt: CheckoutAttempt) -> bool:
        """Decrement stock once per (product, size) not yet decremented."""
        totals: "OrderedDict[tuple[str, str], int]" = OrderedDict()
        for line in attempt.lines:
            key = (line.product_id, line.size)
            totals[key] = totals.get(key, 0) + line.quantity

        for (product_id, size), quantity in totals.items():
            key = stock_key(product_id, size)
            if key in attempt.decremented:
                continue
            try:
                self.catalog.decrement_stock(product_id, size, quantity)
            except Exception as e:
                self._post_payment_failure(
                    attempt, CheckoutStage.STOCK_UPDATING, f"decrement {key} x{quantity} failed: {e}"
                )
                return False
            attempt.decremented.append(key)
            self._save(attempt)
        return True

    def _notification_fields(self, attempt: CheckoutAttempt, stock_ok: bool) -> dict:
        contact, dest, totals = attempt.contact, attempt.destination, attempt.totals
        return {
            "attempt_id": attempt.attempt_id,
            "intent_id": attempt.intent_id,
            "name": contact.name,
            "email": contact.email,
            "phone": contact.phone,
            "address": dest.one_line(),
            "order": ", ".join(line.label for line in attempt.lines),
            "subtotal": str(totals.subtotal),
            "tax": str(totals.tax),
            "shipping": str(totals.shipping),
            "total": str(totals.total),
            "currency": totals.currency,
            "stock_reconciled": stock_ok,
        }

    def _send_confirmation(self, attempt: CheckoutAttempt, stock_ok: bool) -> None:
        if attempt.notified:
            return
        try:
            ack = self.notifier.send(self.notify_template, self._notification_fields(attempt, stock_ok))
        except Exception as e:
            self._post_payment_failure(attempt, CheckoutStage.NOTIFYING, f"notification failed: {e}")
            return
        if ack is False:
            self._post_payment_failure(attempt, CheckoutStage.NOTIFYING, "notification not acknowledged")
            return
        attempt.notified = True
        self._save(attempt)
