"""Cart store: ordered cart lines bounded by per-size stock.

The cart is held per device, persisted to a key-value store after every
mutation and re-validated against the catalog when loaded. Quantities are
always clamped against the freshest stock figure available: the catalog
when it answers, otherwise the ceiling recorded on the line (or on the
product snapshot for new lines).
"""

import json
import logging
import threading
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError

from .domain import (
    CartLine,
    CatalogPort,
    Destination,
    KeyValueStorePort,
    Observable,
    OrderTotals,
    Product,
    quantize_money,
)
from .schemas import PersistedCartLine
from .shipping import DEFAULT_RULES, ShippingRules, shipping_cost

logger = logging.getLogger("storefront.cart")

CART_NAMESPACE = "cart"
DEFAULT_TAX_RATE = Decimal("0.02")


class CartStore(Observable):
    """Client-held shopping cart.

    Mutations are serialized by an internal lock. Derived totals are
    computed on read from the current lines, destination and tax rate and
    are never stored.

    Args:
        cart_id: Device-scoped cart identifier (storage key).
        store: Key-value store used for persistence.
        catalog: Catalog backend providing current stock.
        shipping_rules: Rate table for ``shipping_cost``.
        tax_rate: Fraction of the subtotal charged as tax.
        canonical_currency: Currency of every stored price.
    """

    def __init__(
        self,
        cart_id: str,
        store: KeyValueStorePort,
        catalog: CatalogPort,
        shipping_rules: ShippingRules = DEFAULT_RULES,
        tax_rate: Decimal = DEFAULT_TAX_RATE,
        canonical_currency: str = "CAD",
    ):
        super().__init__()
        self.cart_id = cart_id
        self.store = store
        self.catalog = catalog
        self.shipping_rules = shipping_rules
        self.tax_rate = Decimal(tax_rate)
        self.canonical_currency = canonical_currency
        self.display_currency = canonical_currency
        self.destination = Destination()
        self._lock = threading.RLock()
        self._lines: List[CartLine] = []
        self.hydrate()

    # ---- reads ----
    def get(self) -> Tuple[CartLine, ...]:
        """Return an immutable snapshot of the current lines."""
        with self._lock:
            return tuple(self._lines)

    @property
    def lines(self) -> Tuple[CartLine, ...]:
        return self.get()

    @property
    def total_items(self) -> int:
        return sum(line.quantity for line in self.get())

    def find(self, product_id: str, size: str) -> Optional[CartLine]:
        for line in self.get():
            if line.key == (product_id, size):
                return line
        return None

    def totals(self, destination: Optional[Destination] = None) -> OrderTotals:
        """Compute subtotal, tax, shipping and total in the canonical currency.

        Shipping is zero for an empty cart and while no destination country
        is known.
        """
        lines = self.get()
        dest = destination or self.destination
        subtotal = quantize_money(sum((line.line_total for line in lines), Decimal(0)))
        tax = quantize_money(subtotal * self.tax_rate)
        if lines and dest.country:
            shipping = quantize_money(shipping_cost(dest.country, dest.region, self.shipping_rules))
        else:
            shipping = quantize_money(Decimal(0))
        return OrderTotals(
            subtotal=subtotal,
            tax=tax,
            shipping=shipping,
            total=subtotal + tax + shipping,
            currency=self.canonical_currency,
        )

    # ---- stock ----
    def _current_stock(self, product_id: str, size: str, fallback: int) -> int:
        """Return the freshest stock ceiling for (product, size).

        A product the catalog no longer knows has no stock. When the catalog
        cannot be reached ``fallback`` is used.
        """
        try:
            product = self.catalog.get_product(product_id)
        except Exception as e:
            logger.warning(
                "catalog unavailable, using cached stock",
                extra={"product_id": product_id, "size": size, "error": str(e)},
            )
            return max(0, int(fallback))
        if product is None:
            return 0
        return product.stock_for(size)

    # ---- mutations ----
    def add_line(self, product: Product, size: Optional[str]) -> bool:
        """Add one unit of (product, size).

        Returns:
            bool: False without mutating when the size is missing, has no
            stock, or the existing line is already at the stock ceiling.
        """
        if not size:
            return False
        with self._lock:
            stock = self._current_stock(product.id, size, fallback=product.stock_for(size))
            if stock <= 0:
                return False
            existing = self.find(product.id, size)
            if existing is not None:
                if existing.quantity >= stock:
                    return False
                self._replace(existing, CartLine(existing.product, size, existing.quantity + 1, stock))
            else:
                self._lines.append(CartLine(product, size, 1, stock))
            self._changed()
        return True

    def update_quantity(self, product_id: str, size: str, new_quantity: int) -> Optional[CartLine]:
        """Set a line's quantity, clamped to ``[1, current stock]``.

        Requests below 1 are ignored; removal is ``remove_line``. When the
        size has run out of stock the line is left as is.

        Returns:
            The resulting line, or None when no such line exists.
        """
        line = self.find(product_id, size)
        if line is None or new_quantity < 1:
            return line
        with self._lock:
            line = self.find(product_id, size)
            if line is None:
                return None
            stock = self._current_stock(product_id, size, fallback=line.size_stock)
            if stock <= 0:
                logger.info("size out of stock, quantity left unchanged", extra={"product_id": product_id, "size": size})
                return line
            updated = CartLine(line.product, size, min(int(new_quantity), stock), stock)
            if updated != line:
                self._replace(line, updated)
                self._changed()
            return updated

    def remove_line(self, product_id: str, size: str) -> None:
        with self._lock:
            before = len(self._lines)
            self._lines = [line for line in self._lines if line.key != (product_id, size)]
            if len(self._lines) != before:
                self._changed()

    def clear(self) -> None:
        with self._lock:
            self._lines = []
            self._changed()

    def set_destination(self, destination: Destination) -> None:
        self.destination = destination
        self._notify()

    def set_display_currency(self, code: str) -> None:
        self.display_currency = code.upper()
        self._notify()

    def _replace(self, old: CartLine, new: CartLine) -> None:
        self._lines[self._lines.index(old)] = new

    def _changed(self) -> None:
        self.persist()
        self._notify()

    # ---- persistence ----
    def persist(self) -> None:
        """Write the full line list to the key-value store as JSON."""
        body = [PersistedCartLine.from_domain(line).model_dump(mode="json") for line in self._lines]
        self.store.set(CART_NAMESPACE, self.cart_id, json.dumps(body))

    def _read_persisted(self) -> List[CartLine]:
        raw = self.store.get(CART_NAMESPACE, self.cart_id)
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("unreadable cart snapshot, starting empty", extra={"cart_id": self.cart_id})
            return []
        if not isinstance(data, list):
            logger.warning("unexpected cart snapshot shape, starting empty", extra={"cart_id": self.cart_id})
            return []
        lines = []
        for item in data:
            try:
                lines.append(PersistedCartLine.model_validate(item).to_domain())
            except ValidationError:
                logger.info("dropping malformed cart line", extra={"cart_id": self.cart_id})
        return lines

    def _stock_snapshot(self) -> Optional[Dict[str, Product]]:
        try:
            return {p.id: p for p in self.catalog.list_products()}
        except Exception as e:
            logger.warning("catalog unavailable during hydration", extra={"cart_id": self.cart_id, "error": str(e)})
            return None

    def hydrate(self) -> None:
        """Load persisted lines, re-validating each against current stock.

        Lines whose stock is zero or unknown are dropped; quantities above
        the current stock are clamped down. Duplicate keys are coalesced.
        """
        persisted = self._read_persisted()
        products = self._stock_snapshot() if persisted else {}
        merged: Dict[Tuple[str, str], CartLine] = {}
        for line in persisted:
            if products is None:
                stock = line.size_stock
            elif line.product_id in products:
                stock = products[line.product_id].stock_for(line.size)
            else:
                stock = 0
            if stock <= 0:
                continue
            qty = line.quantity + (merged[line.key].quantity if line.key in merged else 0)
            merged[line.key] = CartLine(line.product, line.size, min(qty, stock), stock)
        with self._lock:
            self._lines = list(merged.values())
            if self._lines != persisted:
                self.persist()
