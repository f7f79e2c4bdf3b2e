"""Domain models, ports and errors for the storefront.

This module contains the dataclasses used as DTOs across the cart, pricing
and checkout layers, protocol definitions (ports) for external
collaborators such as the catalog backend, payment gateway, rate services
and notification service, and the exception hierarchy raised by the domain
services.

All monetary amounts are ``Decimal`` values in the canonical currency.
"""

from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Tuple


CENTS = Decimal("0.01")


def quantize_money(amount: Decimal) -> Decimal:
    """Round a monetary amount to cents using half-up rounding."""
    return Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)


def to_cents(amount: Decimal) -> int:
    """Express an amount as integer minor units (cents)."""
    return int(quantize_money(amount) * 100)


# ---- Enums ----
class CheckoutStage(str, Enum):
    """Stages of a single checkout attempt.

    ``FAILED`` is reachable from every non-idle stage; the stage that failed
    is kept separately on the attempt.
    """

    IDLE = "IDLE"
    INTENT_PENDING = "INTENT_PENDING"
    PAYMENT_CONFIRMING = "PAYMENT_CONFIRMING"
    STOCK_UPDATING = "STOCK_UPDATING"
    NOTIFYING = "NOTIFYING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class RateSource(str, Enum):
    """Where a rate returned by the rate cache came from."""

    IDENTITY = "IDENTITY"
    CACHE = "CACHE"
    PRIMARY = "PRIMARY"
    SECONDARY = "SECONDARY"
    STALE = "STALE"
    FALLBACK = "FALLBACK"


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class Product:
    """Catalog product as seen by the storefront.

    Attributes:
        id: Catalog identifier.
        name: Display name.
        price: Unit price in the canonical currency.
        stock: Ordered mapping of size label to available quantity.
        image_urls: Image references, passed through untouched.
        category: Optional catalog category.
    """

    id: str
    name: str
    price: Decimal
    stock: Dict[str, int] = field(default_factory=dict)
    image_urls: Tuple[str, ...] = ()
    category: str = ""

    def stock_for(self, size: str) -> int:
        """Return the available quantity for ``size`` (0 when unknown)."""
        return max(0, int(self.stock.get(size, 0)))

    @property
    def sizes(self) -> List[str]:
        return list(self.stock.keys())


@dataclass(frozen=True)
class CartLine:
    """One (product, size) pairing in the cart.

    ``product`` is a snapshot taken when the line was added; ``size_stock``
    is the stock ceiling observed at the last mutation of this line.
    """

    product: Product
    size: str
    quantity: int
    size_stock: int

    @property
    def product_id(self) -> str:
        return self.product.id

    @property
    def key(self) -> Tuple[str, str]:
        return (self.product.id, self.size)

    @property
    def line_total(self) -> Decimal:
        return self.product.price * self.quantity


@dataclass(frozen=True)
class Destination:
    """Shipping destination entered by the customer."""

    country: str = ""
    region: str = ""
    city: str = ""
    address: str = ""
    postal_code: str = ""

    def one_line(self) -> str:
        parts = [self.address, self.city, self.region, self.country, self.postal_code]
        return ", ".join(p for p in parts if p)


@dataclass(frozen=True)
class ContactInfo:
    """Customer contact details collected at checkout."""

    name: str
    email: str
    phone: str = ""


@dataclass(frozen=True)
class OrderTotals:
    """Derived order totals, all in the canonical currency."""

    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal
    currency: str

    @property
    def total_cents(self) -> int:
        return to_cents(self.total)

    def as_dict(self) -> dict:
        return {
            "subtotal": str(self.subtotal),
            "tax": str(self.tax),
            "shipping": str(self.shipping),
            "total": str(self.total),
            "currency": self.currency,
        }


@dataclass(frozen=True)
class PaymentIntent:
    """A payment intent handle returned by the gateway."""

    intent_id: str
    client_secret: str


@dataclass(frozen=True)
class PaymentConfirmation:
    """Result of confirming a payment instrument against an intent.

    Attributes:
        status: Gateway status string; ``"succeeded"`` means settled.
        message: Human readable gateway message (e.g. decline reason).
    """

    status: str
    message: str = ""

    @property
    def settled(self) -> bool:
        return self.status == "succeeded"


@dataclass(frozen=True)
class RateQuote:
    """A rate with provenance. ``degraded`` quotes are not authoritative."""

    rate: Decimal
    source: RateSource

    @property
    def degraded(self) -> bool:
        return self.source in (RateSource.STALE, RateSource.FALLBACK)


@dataclass(frozen=True)
class UserLocation:
    country: str
    country_code: str
    currency: str


@dataclass(frozen=True)
class OrderLine:
    """Line as captured on a checkout attempt (independent of the cart)."""

    product_id: str
    name: str
    size: str
    quantity: int
    unit_price: Decimal

    @property
    def label(self) -> str:
        return f"{self.quantity}x {self.name} (Size: {self.size})"


@dataclass
class CheckoutAttempt:
    """State of one checkout attempt, persisted across user retries.

    Attributes:
        attempt_id: Identifier carried across retries; prefixes the
            gateway idempotency key used when creating intents.
        cart_id: Cart the attempt was started from.
        stage: Current ``CheckoutStage``.
        failed_stage: Stage that failed when ``stage`` is FAILED.
        intent_id: Gateway intent id, if one was created.
        client_secret: Gateway secret for ``intent_id``.
        intent_generation: Number of intents created so far; part of the
            idempotency key sent when creating the next one.
        settled: True once the gateway reported the payment as captured.
        lines: Order lines captured when the payment was requested.
        totals: Totals the payment was requested for.
        destination: Shipping destination.
        contact: Customer contact details.
        decremented: ``"product_id|size"`` keys whose stock was already
            decremented for ``intent_id``.
        notified: True once the confirmation notification was acknowledged.
        errors: Post-payment error messages, oldest first.
    """

    attempt_id: str
    cart_id: Optional[str] = None
    stage: CheckoutStage = CheckoutStage.IDLE
    failed_stage: Optional[CheckoutStage] = None
    intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    intent_generation: int = 0
    settled: bool = False
    lines: List[OrderLine] = field(default_factory=list)
    totals: Optional[OrderTotals] = None
    destination: Optional[Destination] = None
    contact: Optional[ContactInfo] = None
    decremented: List[str] = field(default_factory=list)
    notified: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def reconciliation_pending(self) -> bool:
        """Money captured but stock or notification still outstanding."""
        return self.settled and self.stage == CheckoutStage.FAILED


@dataclass(frozen=True)
class CheckoutResult:
    """Outcome returned to the caller of a checkout.

    ``success`` is True whenever the payment settled, including attempts
    that still need manual reconciliation.
    """

    attempt: CheckoutAttempt
    success: bool
    message: str = ""

    @property
    def reconciliation_pending(self) -> bool:
        return self.attempt.reconciliation_pending


# ---- Observable stores ----
class Observable:
    """Minimal change-notification support for in-memory stores."""

    def __init__(self):
        self._subscribers: List[Callable[[], None]] = []

    def subscribe(self, on_change: Callable[[], None]) -> Callable[[], None]:
        """Register ``on_change``; returns a callable that unsubscribes it."""
        self._subscribers.append(on_change)

        def unsubscribe():
            if on_change in self._subscribers:
                self._subscribers.remove(on_change)

        return unsubscribe

    def _notify(self) -> None:
        for cb in list(self._subscribers):
            cb()


# ---- Errors ----
class StorefrontError(ValueError):
    """Base class for domain errors carrying a short upper-case code."""

    def __init__(self, code: str, message: str = ""):
        super().__init__(code)
        self.code = code
        self.message = message or code


class CheckoutValidationError(StorefrontError):
    """Checkout input rejected before any side effect."""


class PaymentFailedError(StorefrontError):
    """Payment declined or gateway unreachable; carries the gateway message."""

    def __init__(self, message: str):
        super().__init__("PAYMENT_FAILED", message)


class IntentUnavailableError(StorefrontError):
    """Neither updating nor creating a payment intent succeeded."""

    def __init__(self, message: str = ""):
        super().__init__("INTENT_UNAVAILABLE", message)


class IntentAlreadySettledError(StorefrontError):
    """The intent was already captured by the gateway and cannot change."""

    def __init__(self, intent_id: str = ""):
        super().__init__("INTENT_ALREADY_SETTLED", intent_id)
        self.intent_id = intent_id


class RateUnavailableError(RuntimeError):
    """Raised by rate services that cannot produce a usable rate."""


# ---- Ports (DIP) ----
class CatalogPort(Protocol):
    """Catalog/inventory backend."""

    def list_products(self) -> List[Product]:
        """Return every product with its per-size stock."""
        raise NotImplementedError()

    def get_product(self, product_id: str) -> Optional[Product]:
        """Return one product with fresh stock, or None when unknown."""
        raise NotImplementedError()

    def decrement_stock(self, product_id: str, size: str, quantity: int) -> int:
        """Decrement stock (clamped at zero) and return what remains."""
        raise NotImplementedError()


class PaymentGatewayPort(Protocol):
    """Payment gateway operating on payment intents."""

    def create_intent(
        self, amount_cents: int, currency: str, metadata: dict, idempotency_key: Optional[str] = None
    ) -> PaymentIntent:
        raise NotImplementedError()

    def update_intent(self, intent_id: str, amount_cents: int, currency: str, metadata: dict) -> PaymentIntent:
        """Change amount and metadata of an unsettled intent.

        Raises:
            IntentAlreadySettledError: The intent was already captured.
        """
        raise NotImplementedError()

    def confirm_payment(self, client_secret: str, payment_method: str) -> PaymentConfirmation:
        raise NotImplementedError()


class RateServicePort(Protocol):
    """Foreign-exchange rate service."""

    def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        """Return the multiplier converting ``from_currency`` to ``to_currency``.

        Raises:
            RateUnavailableError or a transport error when no rate is available.
        """
        raise NotImplementedError()


class NotificationPort(Protocol):
    """Outbound notification (e-mail) service."""

    def send(self, template: str, fields: dict) -> bool:
        raise NotImplementedError()


class GeoLocationPort(Protocol):
    """Resolves the caller's approximate location."""

    def locate(self) -> UserLocation:
        raise NotImplementedError()


class KeyValueStorePort(Protocol):
    """Durable string key-value storage partitioned by namespace."""

    def get(self, namespace: str, key: str) -> Optional[str]:
        raise NotImplementedError()

    def set(self, namespace: str, key: str, value: str) -> None:
        raise NotImplementedError()

    def delete(self, namespace: str, key: str) -> None:
        raise NotImplementedError()


class ReconciliationPort(Protocol):
    """Queue of post-payment failures awaiting manual follow-up."""

    def report(self, attempt: CheckoutAttempt, stage: CheckoutStage, detail: str) -> None:
        raise NotImplementedError()
