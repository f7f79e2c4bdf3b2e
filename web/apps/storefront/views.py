"""HTTP views for the storefront app.

This module contains DRF API views over the cart, pricing and checkout
services. Views are kept intentionally small: they validate requests (via
Pydantic), build the domain services through ``providers``, delegate, and
map domain outcomes to HTTP responses.

Cart identity: every cart belongs to one device, identified by the
client-held ``X-Cart-Id`` header. When the header is missing or malformed a
new id is generated; every response echoes the id back so the client can
store it.
"""

import re
import uuid
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.core.cache import cache
from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from .domain import (
    CheckoutResult,
    CheckoutValidationError,
    IntentUnavailableError,
    PaymentFailedError,
)
from .providers import (
    canonical_currency,
    get_cart_store,
    get_catalog,
    get_checkout_orchestrator,
    get_display_currency_store,
    get_price_formatter,
    get_rate_services,
)
from .schemas import CartLineKeyIn, CheckoutIn, CurrencyIn, DestinationIn, UpdateQuantityIn

CART_HEADER = "X-Cart-Id"
CART_ID_RE = re.compile(r"^[A-Za-z0-9_-]{8,64}$")
_TRUE = {"1", "true", "yes", "on"}


def _cart_id(request) -> str:
    cid = request.headers.get(CART_HEADER, "")
    return cid if CART_ID_RE.match(cid) else uuid.uuid4().hex


def _respond(cart_id: str, body, status_code=status.HTTP_200_OK) -> Response:
    resp = Response(body, status=status_code)
    resp[CART_HEADER] = cart_id
    return resp


def _flag(request, name: str) -> bool:
    return request.query_params.get(name, "").lower() in _TRUE


def _validation_detail(e: ValidationError) -> list:
    return [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()]


def serialize_cart(cart, display_currency: str, formatter, destination=None) -> dict:
    """Lines, canonical totals and display-currency totals for a cart."""
    totals = cart.totals(destination)
    return {
        "lines": [
            {
                "product_id": line.product_id,
                "name": line.product.name,
                "size": line.size,
                "quantity": line.quantity,
                "size_stock": line.size_stock,
                "unit_price": str(line.product.price),
                "line_total": str(line.line_total),
                "display_line_total": formatter.format(line.line_total, display_currency),
            }
            for line in cart.get()
        ],
        "total_items": cart.total_items,
        "totals": totals.as_dict(),
        "display": {"currency": display_currency, **formatter.format_totals(totals, display_currency)},
    }


class PingView(APIView):
    """Liveness endpoint for the storefront module."""

    def get(self, request):
        return Response({"ok": True})


class CartView(APIView):
    """Read or clear the device cart.

    GET accepts optional ``country`` / ``region`` (destination used for
    shipping) and ``currency`` (display currency) query parameters.
    """

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "cart"

    def get(self, request):
        cart_id = _cart_id(request)
        cart = get_cart_store(cart_id)
        destination = None
        if request.query_params.get("country"):
            try:
                destination = DestinationIn(
                    country=request.query_params["country"],
                    region=request.query_params.get("region", ""),
                ).to_domain()
            except ValidationError as e:
                return _respond(cart_id, {"detail": _validation_detail(e)}, status.HTTP_400_BAD_REQUEST)
        currency = request.query_params.get("currency") or get_display_currency_store(
            cart_id, request.META.get("REMOTE_ADDR")
        ).get()
        body = serialize_cart(cart, currency.upper(), get_price_formatter(), destination)
        return _respond(cart_id, body)

    def delete(self, request):
        cart_id = _cart_id(request)
        get_cart_store(cart_id).clear()
        return _respond(cart_id, None, status.HTTP_204_NO_CONTENT)


class CartLinesView(APIView):
    """Add (POST), re-quantify (PATCH) or remove (DELETE) a cart line.

    Returns:
        - 201 with the cart when a unit was added.
        - 409 with {detail: "STOCK_LIMIT"} when the size has no stock left
          or the line is already at the stock ceiling.
        - 404 with {detail: "UNKNOWN_PRODUCT"} for products the catalog
          does not know.
        - 503 with {detail: "UPSTREAM_UNAVAILABLE"} when the catalog cannot
          be reached to resolve the product.
        - 400 for payload validation errors.
    """

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "cart"

    def _body(self, cart_id, cart):
        return serialize_cart(cart, canonical_currency(), get_price_formatter())

    def post(self, request):
        cart_id = _cart_id(request)
        try:
            dto = CartLineKeyIn.model_validate(request.data)
        except ValidationError as e:
            return _respond(cart_id, {"detail": _validation_detail(e)}, status.HTTP_400_BAD_REQUEST)

        cart = get_cart_store(cart_id)
        try:
            product = cart.catalog.get_product(dto.product_id)
        except Exception:
            return _respond(cart_id, {"detail": "UPSTREAM_UNAVAILABLE"}, status.HTTP_503_SERVICE_UNAVAILABLE)
        if product is None:
            return _respond(cart_id, {"detail": "UNKNOWN_PRODUCT"}, status.HTTP_404_NOT_FOUND)

        if not cart.add_line(product, dto.size):
            return _respond(cart_id, {"detail": "STOCK_LIMIT"}, status.HTTP_409_CONFLICT)
        return _respond(cart_id, self._body(cart_id, cart), status.HTTP_201_CREATED)

    def patch(self, request):
        cart_id = _cart_id(request)
        try:
            dto = UpdateQuantityIn.model_validate(request.data)
        except ValidationError as e:
            return _respond(cart_id, {"detail": _validation_detail(e)}, status.HTTP_400_BAD_REQUEST)
        cart = get_cart_store(cart_id)
        if cart.update_quantity(dto.product_id, dto.size, dto.quantity) is None:
            return _respond(cart_id, {"detail": "UNKNOWN_LINE"}, status.HTTP_404_NOT_FOUND)
        return _respond(cart_id, self._body(cart_id, cart))

    def delete(self, request):
        cart_id = _cart_id(request)
        try:
            dto = CartLineKeyIn.model_validate(request.data)
        except ValidationError as e:
            return _respond(cart_id, {"detail": _validation_detail(e)}, status.HTTP_400_BAD_REQUEST)
        cart = get_cart_store(cart_id)
        cart.remove_line(dto.product_id, dto.size)
        return _respond(cart_id, self._body(cart_id, cart))


class ProductsView(APIView):
    """Catalog listing with prices formatted in the display currency."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "pricing"

    def get(self, request):
        currency = (request.query_params.get("currency") or canonical_currency()).upper()
        formatter = get_price_formatter()
        try:
            products = get_catalog().list_products()
        except Exception:
            return Response({"detail": "UPSTREAM_UNAVAILABLE"}, status=status.HTTP_503_SERVICE_UNAVAILABLE)
        return Response([
            {
                "id": p.id,
                "name": p.name,
                "category": p.category,
                "price": str(p.price),
                "display_price": formatter.format(p.price, currency),
                "stock": p.stock,
                "image_urls": list(p.image_urls),
            }
            for p in products
        ])


class PriceFormatView(APIView):
    """Format a canonical amount: ``?amount=&currency=&compact=&show_code=&show_canonical=``."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "pricing"

    def get(self, request):
        try:
            amount = Decimal(request.query_params.get("amount", ""))
        except InvalidOperation:
            return Response({"detail": "INVALID_AMOUNT"}, status=status.HTTP_400_BAD_REQUEST)
        if not amount.is_finite():
            return Response({"detail": "INVALID_AMOUNT"}, status=status.HTTP_400_BAD_REQUEST)
        currency = (request.query_params.get("currency") or canonical_currency()).upper()
        text = get_price_formatter().format(
            amount,
            currency,
            show_canonical_equivalent=_flag(request, "show_canonical"),
            compact=_flag(request, "compact"),
            show_currency_code=_flag(request, "show_code"),
        )
        return Response({"amount": str(amount), "currency": currency, "formatted": text})


class CurrencyView(APIView):
    """Read (GET) or select (PUT) the device's display currency."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "pricing"

    def get(self, request):
        cart_id = _cart_id(request)
        store = get_display_currency_store(cart_id, request.META.get("REMOTE_ADDR"))
        loc = store.location()
        return _respond(cart_id, {
            "currency": store.get(),
            "country": loc.country,
            "country_code": loc.country_code,
        })

    def put(self, request):
        cart_id = _cart_id(request)
        try:
            dto = CurrencyIn.model_validate(request.data)
        except ValidationError as e:
            return _respond(cart_id, {"detail": _validation_detail(e)}, status.HTTP_400_BAD_REQUEST)
        store = get_display_currency_store(cart_id, request.META.get("REMOTE_ADDR"))
        if not store.set(dto.currency):
            return _respond(cart_id, {"detail": "UNSUPPORTED_CURRENCY"}, status.HTTP_400_BAD_REQUEST)
        return _respond(cart_id, {"currency": store.get()})


class RatesView(APIView):
    """Server-side exchange rate lookup backed by Django's cache.

    ``GET /api/rates?from=CAD&to=EUR`` → ``{rate, from, to, cached}``. This
    is the endpoint the secondary rate client talks to.
    """

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "pricing"

    def get(self, request):
        from_currency = (request.query_params.get("from") or canonical_currency()).upper()
        to_currency = (request.query_params.get("to") or "").upper()
        if not to_currency:
            return Response({"error": "Target currency (to) is required"}, status=status.HTTP_400_BAD_REQUEST)
        if from_currency == to_currency:
            return Response({"rate": 1, "from": from_currency, "to": to_currency, "cached": False})

        cache_key = f"rates:{from_currency}_{to_currency}"
        cached = cache.get(cache_key)
        if cached is not None:
            return Response({"rate": float(cached), "from": from_currency, "to": to_currency, "cached": True})

        primary, _ = get_rate_services()
        try:
            rate = primary.get_rate(from_currency, to_currency)
        except Exception as e:
            return Response(
                {"error": "Failed to fetch exchange rate", "details": str(e)},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        cache.set(cache_key, str(rate), timeout=getattr(settings, "RATE_CACHE_TTL_SECS", 12 * 60 * 60))
        return Response({"rate": float(rate), "from": from_currency, "to": to_currency, "cached": False})


def _checkout_body(result: CheckoutResult) -> dict:
    attempt = result.attempt
    return {
        "attempt_id": attempt.attempt_id,
        "status": attempt.stage.value,
        "success": result.success,
        "message": result.message,
        "reconciliation_pending": result.reconciliation_pending,
        "totals": attempt.totals.as_dict() if attempt.totals else None,
    }


class CheckoutView(APIView):
    """Pay for the device cart.

    Returns:
        - 200 with {attempt_id, status, success, reconciliation_pending, ...}
          once the payment settled (post-payment issues included).
        - 400 with {detail: <code>} for validation errors.
        - 402 with {detail: "PAYMENT_FAILED", message: <gateway message>}.
        - 503 with {detail: "INTENT_UNAVAILABLE"} when no payment intent
          could be obtained.
    """

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "checkout"

    def post(self, request):
        cart_id = _cart_id(request)
        try:
            dto = CheckoutIn.model_validate(request.data)
        except ValidationError as e:
            return _respond(cart_id, {"detail": _validation_detail(e)}, status.HTTP_400_BAD_REQUEST)

        orchestrator = get_checkout_orchestrator(get_cart_store(cart_id))
        try:
            result = orchestrator.checkout(dto.contact.to_domain(), dto.destination.to_domain(), dto.payment_method)
        except CheckoutValidationError as e:
            return _respond(cart_id, {"detail": e.code}, status.HTTP_400_BAD_REQUEST)
        except PaymentFailedError as e:
            return _respond(cart_id, {"detail": e.code, "message": e.message}, status.HTTP_402_PAYMENT_REQUIRED)
        except IntentUnavailableError as e:
            return _respond(cart_id, {"detail": e.code}, status.HTTP_503_SERVICE_UNAVAILABLE)
        return _respond(cart_id, _checkout_body(result))


class CheckoutRetryView(APIView):
    """Resume the post-payment steps of a settled attempt."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "checkout"

    def post(self, request, attempt_id: str):
        cart_id = _cart_id(request)
        orchestrator = get_checkout_orchestrator(get_cart_store(cart_id))
        try:
            result = orchestrator.resume(attempt_id)
        except CheckoutValidationError as e:
            code = status.HTTP_404_NOT_FOUND if e.code == "UNKNOWN_ATTEMPT" else status.HTTP_409_CONFLICT
            return _respond(cart_id, {"detail": e.code}, code)
        return _respond(cart_id, _checkout_body(result))
