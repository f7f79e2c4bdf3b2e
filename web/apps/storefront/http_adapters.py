"""HTTP adapter clients with retries, circuit breakers, and context headers.

This module implements concrete HTTP clients for the storefront ports using
``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from a ContextVar set by
    the gateway middleware.
- Circuit breaker per downstream service (inventory, payments, rates,
    notifications, geolocation) to avoid hammering unhealthy dependencies,
    with HALF_OPEN probing after a timeout.
- Simple retry policy with exponential backoff for transport errors and 5xx.
    Stock decrements are sent once and never retried.
- Payments idempotency: intent creation propagates an ``Idempotency-Key``
    header so a retried request cannot create a second intent.
"""

import logging
import threading
import time
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .domain import (
    CatalogPort,
    GeoLocationPort,
    IntentAlreadySettledError,
    NotificationPort,
    PaymentConfirmation,
    PaymentGatewayPort,
    PaymentIntent,
    Product,
    RateServicePort,
    RateUnavailableError,
    UserLocation,
)

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")

logger = logging.getLogger("storefront.http")


class CircuitOpenError(RuntimeError):
    """Raised instead of calling a dependency whose circuit is open."""


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; only one probe may be in
      flight; a failed probe opens the circuit again.

    This implementation is thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Return the state at call time, refusing calls the circuit blocks.

        Raises:
            CircuitOpenError: If the circuit is OPEN or a HALF_OPEN probe is busy.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise CircuitOpenError(f"CIRCUIT_OPEN:{self.name}")
            if st == "HALF_OPEN":
                if self._probe_in_flight:
                    raise CircuitOpenError(f"CIRCUIT_HALF_OPEN_BUSY:{self.name}")
                self._probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._probe_in_flight = False
                logger.warning("circuit opened", extra={"service": self.name})

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._probe_in_flight = False

    def reset(self):
        self.on_success()


_breakers: Dict[str, CircuitBreaker] = {}
_breakers_lock = threading.Lock()


def breaker(service: str) -> CircuitBreaker:
    """Return the process-wide circuit breaker for ``service``."""
    with _breakers_lock:
        if service not in _breakers:
            _breakers[service] = CircuitBreaker(
                service,
                getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
                getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
            )
        return _breakers[service]


def reset_breakers() -> None:
    with _breakers_lock:
        _breakers.clear()


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_attempts, backoff_base_seconds)."""
    return (
        max(1, getattr(settings, "HTTP_RETRY_MAX", 3)),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only on transport errors or HTTP 5xx."""
    if exc is not None:
        return True
    if resp is not None and 500 <= resp.status_code < 600:
        return True
    return False


def _send(
    service: str,
    method: str,
    url: str,
    *,
    json: Optional[dict] = None,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    timeout: float,
    business_statuses: Iterable[int] = (),
    retry: bool = True,
) -> httpx.Response:
    """Send one request through the service's circuit breaker with retries.

    2xx responses and any status in ``business_statuses`` are returned and
    count as circuit successes. Other 4xx responses raise without counting
    against the circuit. Transport errors and 5xx are retried with
    exponential backoff and raise once attempts are exhausted.

    Raises:
        CircuitOpenError: The circuit refused the call.
        httpx.RequestError: Transport failure after retries.
        httpx.HTTPStatusError: Non-business error status.
    """
    max_attempts, backoff = _retry_policy()
    if not retry:
        max_attempts = 1
    business = set(business_statuses)
    cb = breaker(service)
    state = cb.before_call()
    headers = _request_headers({"X-Circuit-State": state, "X-Retry-Count": "0", **(headers or {})})
    tries = 0

    try:
        with httpx.Client(timeout=timeout) as client:
            while True:
                resp = None
                exc = None
                try:
                    if method == "GET":
                        resp = client.get(url, params=params, headers=headers)
                    else:
                        resp = client.post(url, json=json, headers=headers)
                    if resp.status_code < 400 or resp.status_code in business:
                        cb.on_success()
                        return resp
                    if not _should_retry(resp, None):
                        resp.raise_for_status()
                except httpx.RequestError as e:
                    exc = e

                tries += 1
                headers["X-Retry-Count"] = str(tries)

                if tries >= max_attempts or not _should_retry(resp, exc):
                    cb.on_failure()
                    logger.warning(
                        "downstream call failed",
                        extra={"service": service, "url": url, "tries": tries, "error": str(exc or resp.status_code)},
                    )
                    if exc:
                        raise exc
                    resp.raise_for_status()

                sleep_s = backoff * (2 ** (tries - 1))
                time.sleep(min(sleep_s, getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)))
    finally:
        cb.on_finish()


def _timeout(timeout: Optional[float]) -> float:
    return timeout or getattr(settings, "HTTP_TIMEOUT_SECS", 5.0)


def _product_from_json(data: dict) -> Product:
    return Product(
        id=str(data["id"]),
        name=data.get("name", ""),
        price=Decimal(str(data["price"])),
        stock={str(k): int(v) for k, v in (data.get("stock") or {}).items()},
        image_urls=tuple(data.get("image_urls") or ()),
        category=data.get("category") or "",
    )


# ---------------- Catalog / Inventory ---------------- #

class HttpCatalogClient(CatalogPort):
    """HTTP client for the inventory service."""

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = base_url or settings.INVENTORY_BASE_URL
        self.timeout = _timeout(timeout)

    def list_products(self) -> List[Product]:
        resp = _send("inventory", "GET", f"{self.base_url}/products", timeout=self.timeout)
        return [_product_from_json(p) for p in resp.json()]

    def get_product(self, product_id: str) -> Optional[Product]:
        """Fetch one product; 404 maps to None (product no longer sold)."""
        resp = _send(
            "inventory", "GET", f"{self.base_url}/products/{product_id}",
            timeout=self.timeout, business_statuses=(404,),
        )
        if resp.status_code == 404:
            return None
        return _product_from_json(resp.json())

    def decrement_stock(self, product_id: str, size: str, quantity: int) -> int:
        """Decrement stock once, without retries; returns the remaining quantity."""
        resp = _send(
            "inventory", "POST", f"{self.base_url}/stock/decrement",
            json={"product_id": product_id, "size": size, "quantity": quantity},
            timeout=self.timeout, retry=False,
        )
        return int(resp.json().get("remaining", 0))


# ---------------- Payments ---------------- #

class HttpPaymentGatewayClient(PaymentGatewayPort):
    """HTTP client for the payments service (payment intents).

    Business mappings:
    - create: 200 → ``PaymentIntent``
    - update: 409 → ``IntentAlreadySettledError``, 404 → ``ValueError("INTENT_NOT_FOUND")``
    - confirm: 200 or 402 → ``PaymentConfirmation`` carrying the gateway message
    """

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = base_url or settings.PAYMENTS_BASE_URL
        self.timeout = _timeout(timeout)

    def create_intent(self, amount_cents, currency, metadata, idempotency_key=None) -> PaymentIntent:
        extras = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        resp = _send(
            "payments", "POST", f"{self.base_url}/intents",
            json={"amount_cents": amount_cents, "currency": currency, "metadata": metadata},
            headers=extras, timeout=self.timeout,
        )
        data = resp.json()
        return PaymentIntent(data["intent_id"], data["client_secret"])

    def update_intent(self, intent_id, amount_cents, currency, metadata) -> PaymentIntent:
        resp = _send(
            "payments", "POST", f"{self.base_url}/intents/{intent_id}",
            json={"amount_cents": amount_cents, "currency": currency, "metadata": metadata},
            timeout=self.timeout, business_statuses=(404, 409),
        )
        if resp.status_code == 409:
            raise IntentAlreadySettledError(intent_id)
        if resp.status_code == 404:
            raise ValueError("INTENT_NOT_FOUND")
        data = resp.json()
        return PaymentIntent(data["intent_id"], data["client_secret"])

    def confirm_payment(self, client_secret, payment_method) -> PaymentConfirmation:
        resp = _send(
            "payments", "POST", f"{self.base_url}/intents/confirm",
            json={"client_secret": client_secret, "payment_method": payment_method},
            timeout=self.timeout, business_statuses=(402,),
        )
        data = resp.json()
        return PaymentConfirmation(data.get("status", "failed"), data.get("message") or "")


# ---------------- Exchange rates ---------------- #

class HttpExchangeRateClient(RateServicePort):
    """Primary rate service: exchangerate-api.com pair endpoint."""

    def __init__(self, api_key: str | None = None, base_url: str | None = None, timeout: float | None = None):
        self.api_key = api_key if api_key is not None else getattr(settings, "EXCHANGE_API_KEY", "")
        self.base_url = base_url or getattr(settings, "EXCHANGE_API_BASE_URL", "https://v6.exchangerate-api.com/v6")
        self.timeout = _timeout(timeout)

    def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        if not self.api_key:
            raise RateUnavailableError("No exchange API key")
        resp = _send(
            "rates_primary", "GET", f"{self.base_url}/{self.api_key}/pair/{from_currency}/{to_currency}",
            timeout=self.timeout,
        )
        data = resp.json()
        if data.get("result") != "success":
            raise RateUnavailableError(f"Exchange API error: {data.get('error-type', 'unknown')}")
        return Decimal(str(data["conversion_rate"]))


class HttpBackendRateClient(RateServicePort):
    """Secondary rate service: the storefront's own ``/api/rates`` endpoint."""

    def __init__(self, url: str | None = None, timeout: float | None = None):
        self.url = url or settings.RATES_FALLBACK_URL
        self.timeout = _timeout(timeout)

    def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        resp = _send(
            "rates_secondary", "GET", self.url,
            params={"from": from_currency, "to": to_currency}, timeout=self.timeout,
        )
        return Decimal(str(resp.json()["rate"]))


# ---------------- Notifications ---------------- #

class HttpNotificationClient(NotificationPort):
    """E-mail notifications through an EmailJS-compatible send endpoint."""

    def __init__(
        self,
        url: str | None = None,
        service_id: str | None = None,
        user_id: str | None = None,
        timeout: float | None = None,
    ):
        self.url = url or settings.NOTIFY_API_URL
        self.service_id = service_id or getattr(settings, "NOTIFY_SERVICE_ID", "")
        self.user_id = user_id or getattr(settings, "NOTIFY_USER_ID", "")
        self.timeout = _timeout(timeout)

    def send(self, template: str, fields: dict) -> bool:
        _send(
            "notify", "POST", self.url,
            json={
                "service_id": self.service_id,
                "template_id": template,
                "user_id": self.user_id,
                "template_params": fields,
            },
            timeout=self.timeout,
        )
        return True


# ---------------- Geolocation ---------------- #

class HttpGeoLocationClient(GeoLocationPort):
    """Approximate location lookup (ipapi.co JSON format)."""

    def __init__(self, url: str | None = None, timeout: float | None = None):
        self.url = url or getattr(settings, "GEO_API_URL", "https://ipapi.co/json/")
        self.timeout = _timeout(timeout)

    def locate(self) -> UserLocation:
        data = _send("geo", "GET", self.url, timeout=self.timeout).json()
        return UserLocation(
            country=data.get("country_name") or "Canada",
            country_code=data.get("country_code") or "CA",
            currency=data.get("currency") or "CAD",
        )
