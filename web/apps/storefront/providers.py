"""Service provider helpers for wiring storefront services with ports.

The factories below read Django settings and return configured domain
services. When ``settings.USE_HTTP_ADAPTERS`` is truthy the external
collaborators are the HTTP clients from ``http_adapters``; otherwise
process-wide in-memory stubs are used (tests and local development), so
stub state such as stock levels survives across requests.
"""

from decimal import Decimal
from typing import Optional

from django.conf import settings

from .adapters import (
    CatalogStub,
    GeoLocationStub,
    NotificationStub,
    PaymentGatewayStub,
    RateServiceStub,
)
from .cart import CartStore
from .checkout import CheckoutOrchestrator
from .currency import DisplayCurrencyStore
from .http_adapters import (
    HttpBackendRateClient,
    HttpCatalogClient,
    HttpExchangeRateClient,
    HttpGeoLocationClient,
    HttpNotificationClient,
    HttpPaymentGatewayClient,
)
from .pricing import PriceFormatter
from .rates import RateCache
from .repository import DjangoKeyValueStore, ReconciliationRepository
from .shipping import ShippingRules

_stubs: dict = {}


def _use_http() -> bool:
    return bool(getattr(settings, "USE_HTTP_ADAPTERS", True))


def _stub(name: str, factory):
    if name not in _stubs:
        _stubs[name] = factory()
    return _stubs[name]


def reset_stubs() -> None:
    """Forget every stub instance (fresh stock, intents and rates)."""
    _stubs.clear()


def canonical_currency() -> str:
    return getattr(settings, "CANONICAL_CURRENCY", "CAD")


def get_catalog():
    if _use_http():
        return HttpCatalogClient()
    return _stub("catalog", CatalogStub)


def get_gateway():
    if _use_http():
        return HttpPaymentGatewayClient()
    return _stub("gateway", PaymentGatewayStub)


def get_notifier():
    if _use_http():
        return HttpNotificationClient()
    return _stub("notifier", NotificationStub)


def get_rate_services():
    """Return the (primary, secondary) rate services."""
    if _use_http():
        return HttpExchangeRateClient(), HttpBackendRateClient()
    return _stub("rates_primary", RateServiceStub), _stub("rates_secondary", RateServiceStub)


def get_geo(client_ip: Optional[str] = None):
    if not _use_http():
        return _stub("geo", GeoLocationStub)
    if client_ip:
        template = getattr(settings, "GEO_API_IP_URL", "https://ipapi.co/{ip}/json/")
        return HttpGeoLocationClient(url=template.format(ip=client_ip))
    return HttpGeoLocationClient()


def get_store():
    return DjangoKeyValueStore()


def get_reconciliation():
    return ReconciliationRepository()


def get_shipping_rules() -> ShippingRules:
    return ShippingRules(
        domestic_country=getattr(settings, "SHIPPING_DOMESTIC_COUNTRY", "CA"),
        local_regions=frozenset(getattr(settings, "SHIPPING_LOCAL_REGIONS", ("ON",))),
        domestic_rate=Decimal(str(getattr(settings, "SHIPPING_DOMESTIC_RATE", "15.00"))),
        international_rate=Decimal(str(getattr(settings, "SHIPPING_INTERNATIONAL_RATE", "30.00"))),
    )


def get_rate_cache() -> RateCache:
    primary, secondary = get_rate_services()
    return RateCache(
        primary=primary,
        secondary=secondary,
        store=get_store(),
        ttl_secs=getattr(settings, "RATE_CACHE_TTL_SECS", 12 * 60 * 60),
    )


def get_price_formatter() -> PriceFormatter:
    return PriceFormatter(get_rate_cache(), canonical_currency())


def get_display_currency_store(owner: str, client_ip: Optional[str] = None) -> DisplayCurrencyStore:
    return DisplayCurrencyStore(
        owner,
        get_store(),
        geo=get_geo(client_ip),
        location_ttl_secs=getattr(settings, "LOCATION_CACHE_TTL_SECS", 24 * 60 * 60),
    )


def get_cart_store(cart_id: str) -> CartStore:
    """Return the cart for ``cart_id``, hydrated and re-validated."""
    return CartStore(
        cart_id,
        get_store(),
        get_catalog(),
        shipping_rules=get_shipping_rules(),
        tax_rate=Decimal(str(getattr(settings, "TAX_RATE", "0.02"))),
        canonical_currency=canonical_currency(),
    )


def get_checkout_orchestrator(cart: CartStore) -> CheckoutOrchestrator:
    return CheckoutOrchestrator(
        cart=cart,
        gateway=get_gateway(),
        catalog=cart.catalog,
        notifier=get_notifier(),
        store=get_store(),
        reconciliation=get_reconciliation(),
        notify_template=getattr(settings, "NOTIFY_TEMPLATE_ID", "order_confirmation"),
    )
