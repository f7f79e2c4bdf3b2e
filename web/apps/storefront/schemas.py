"""Pydantic schemas for the storefront.

This module exposes request validation schemas used by the API views and
the persistence schemas used to (de)serialize cart lines and checkout
attempts stored in the key-value store.
"""

import re
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .domain import (
    CartLine,
    CheckoutAttempt,
    CheckoutStage,
    ContactInfo,
    Destination,
    OrderLine,
    OrderTotals,
    Product,
)

COUNTRY_RE = re.compile(r"^[A-Z]{2}$")
PAYMENT_METHOD_RE = re.compile(r"^[A-Za-z0-9_]{3,64}$")


# ---- Persistence ----
class PersistedProduct(BaseModel):
    """Product snapshot stored with a cart line."""

    id: str = Field(min_length=1)
    name: str
    price: Decimal = Field(ge=0)
    stock: Dict[str, int] = Field(default_factory=dict)
    image_urls: List[str] = Field(default_factory=list)
    category: str = ""

    @classmethod
    def from_domain(cls, p: Product) -> "PersistedProduct":
        return cls(
            id=p.id, name=p.name, price=p.price, stock=dict(p.stock),
            image_urls=list(p.image_urls), category=p.category,
        )

    def to_domain(self) -> Product:
        return Product(
            id=self.id, name=self.name, price=self.price, stock=dict(self.stock),
            image_urls=tuple(self.image_urls), category=self.category,
        )


class PersistedCartLine(BaseModel):
    """Cart line as written to durable storage.

    Attributes:
        product: Product snapshot taken when the line was added.
        size: Selected size label (required).
        quantity: Positive quantity.
        size_stock: Stock ceiling observed at the last mutation.
    """

    product: PersistedProduct
    size: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    size_stock: int = Field(default=0, ge=0)

    @classmethod
    def from_domain(cls, line: CartLine) -> "PersistedCartLine":
        return cls(
            product=PersistedProduct.from_domain(line.product),
            size=line.size,
            quantity=line.quantity,
            size_stock=line.size_stock,
        )

    def to_domain(self) -> CartLine:
        return CartLine(self.product.to_domain(), self.size, self.quantity, self.size_stock)


class PersistedOrderLine(BaseModel):
    product_id: str
    name: str
    size: str
    quantity: int = Field(gt=0)
    unit_price: Decimal


class PersistedTotals(BaseModel):
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal
    currency: str


class PersistedAttempt(BaseModel):
    """Checkout attempt state stored between user retries."""

    attempt_id: str
    cart_id: Optional[str] = None
    stage: CheckoutStage = CheckoutStage.IDLE
    failed_stage: Optional[CheckoutStage] = None
    intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    intent_generation: int = 0
    settled: bool = False
    lines: List[PersistedOrderLine] = Field(default_factory=list)
    totals: Optional[PersistedTotals] = None
    destination: Optional[dict] = None
    contact: Optional[dict] = None
    decremented: List[str] = Field(default_factory=list)
    notified: bool = False
    errors: List[str] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, a: CheckoutAttempt) -> "PersistedAttempt":
        return cls(
            attempt_id=a.attempt_id,
            cart_id=a.cart_id,
            stage=a.stage,
            failed_stage=a.failed_stage,
            intent_id=a.intent_id,
            client_secret=a.client_secret,
            intent_generation=a.intent_generation,
            settled=a.settled,
            lines=[PersistedOrderLine(**vars(line)) for line in a.lines],
            totals=PersistedTotals(**vars(a.totals)) if a.totals else None,
            destination=vars(a.destination) if a.destination else None,
            contact=vars(a.contact) if a.contact else None,
            decremented=list(a.decremented),
            notified=a.notified,
            errors=list(a.errors),
        )

    def to_domain(self) -> CheckoutAttempt:
        return CheckoutAttempt(
            attempt_id=self.attempt_id,
            cart_id=self.cart_id,
            stage=self.stage,
            failed_stage=self.failed_stage,
            intent_id=self.intent_id,
            client_secret=self.client_secret,
            intent_generation=self.intent_generation,
            settled=self.settled,
            lines=[OrderLine(**line.model_dump()) for line in self.lines],
            totals=OrderTotals(**self.totals.model_dump()) if self.totals else None,
            destination=Destination(**self.destination) if self.destination else None,
            contact=ContactInfo(**self.contact) if self.contact else None,
            decremented=list(self.decremented),
            notified=self.notified,
            errors=list(self.errors),
        )


# ---- API input ----
class CartLineKeyIn(BaseModel):
    """Identifies a cart line.

    Attributes:
        product_id: Catalog product identifier.
        size: Size label; required, a line without a size is invalid.
    """

    product_id: str = Field(min_length=1, max_length=64)
    size: str = Field(min_length=1, max_length=32)


class UpdateQuantityIn(CartLineKeyIn):
    quantity: int


class DestinationIn(BaseModel):
    """Shipping destination form.

    ``country`` is normalized to an upper-case ISO alpha-2 code and
    ``region`` to upper case.
    """

    country: str = Field(min_length=2, max_length=2)
    region: str = Field(default="", max_length=64)
    city: str = Field(default="", max_length=128)
    address: str = Field(default="", max_length=256)
    postal_code: str = Field(default="", max_length=16)

    @field_validator("country")
    @classmethod
    def validate_country(cls, v: str) -> str:
        v2 = v.upper()
        if not COUNTRY_RE.match(v2):
            raise ValueError("Invalid country code")
        return v2

    @field_validator("region")
    @classmethod
    def normalize_region(cls, v: str) -> str:
        return v.strip().upper()

    def to_domain(self) -> Destination:
        return Destination(**self.model_dump())


class ContactIn(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    email: str = Field(min_length=3, max_length=254, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone: str = Field(default="", max_length=32)

    def to_domain(self) -> ContactInfo:
        return ContactInfo(**self.model_dump())


class CheckoutIn(BaseModel):
    """Checkout submission: contact, destination and payment instrument."""

    contact: ContactIn
    destination: DestinationIn
    payment_method: str

    @field_validator("payment_method")
    @classmethod
    def validate_payment_method(cls, v: str) -> str:
        if not PAYMENT_METHOD_RE.match(v):
            raise ValueError("Invalid payment method")
        return v


class CurrencyIn(BaseModel):
    currency: str = Field(min_length=3, max_length=3)

    @field_validator("currency")
    @classmethod
    def upper(cls, v: str) -> str:
        return v.upper()
