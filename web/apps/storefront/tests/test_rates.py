"""Rate cache tests: freshness window, fallback order, degraded answers."""

import json
import logging
from decimal import Decimal

from apps.storefront.adapters import InMemoryKeyValueStore, RateServiceStub
from apps.storefront.domain import RateSource
from apps.storefront.rates import RATE_NAMESPACE, RateCache

TTL = 12 * 60 * 60


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def make_cache(primary=None, secondary=None, store=None, clock=None):
    return RateCache(
        primary=primary if primary is not None else RateServiceStub(),
        secondary=secondary if secondary is not None else RateServiceStub(),
        store=store or InMemoryKeyValueStore(),
        ttl_secs=TTL,
        clock=clock or FakeClock(),
    )


def test_same_currency_is_identity_without_lookup():
    primary, secondary = RateServiceStub(), RateServiceStub()
    cache = make_cache(primary, secondary)

    quote = cache.get_quote("CAD", "cad")

    assert quote.rate == Decimal(1)
    assert quote.source == RateSource.IDENTITY
    assert primary.calls == 0 and secondary.calls == 0


def test_fresh_entry_is_reused_within_window():
    clock = FakeClock()
    primary = RateServiceStub()
    cache = make_cache(primary, clock=clock)

    first = cache.get_quote("CAD", "USD")
    clock.now += TTL - 1
    second = cache.get_quote("CAD", "USD")

    assert first.source == RateSource.PRIMARY
    assert second.source == RateSource.CACHE
    assert second.rate == Decimal("0.73")
    assert primary.calls == 1


def test_expired_entry_is_refetched():
    clock = FakeClock()
    primary = RateServiceStub()
    cache = make_cache(primary, clock=clock)

    cache.get_rate("CAD", "EUR")
    clock.now += TTL
    primary.rates[("CAD", "EUR")] = Decimal("0.70")

    assert cache.get_quote("CAD", "EUR").source == RateSource.PRIMARY
    assert cache.get_rate("CAD", "EUR") == Decimal("0.70")
    assert primary.calls == 2


def test_secondary_used_when_primary_fails():
    primary = RateServiceStub(rates={})
    secondary = RateServiceStub()
    store = InMemoryKeyValueStore()
    cache = make_cache(primary, secondary, store=store)

    quote = cache.get_quote("CAD", "GBP")

    assert quote.source == RateSource.SECONDARY
    assert quote.rate == Decimal("0.58")
    assert store.get(RATE_NAMESPACE, "rate_CAD_GBP") is not None


def test_non_positive_rate_counts_as_failure():
    primary = RateServiceStub(rates={("CAD", "USD"): Decimal("0")})
    cache = make_cache(primary, RateServiceStub())

    assert cache.get_quote("CAD", "USD").source == RateSource.SECONDARY


def test_stale_entry_used_when_every_service_fails(caplog):
    clock = FakeClock()
    store = InMemoryKeyValueStore()
    store.set(RATE_NAMESPACE, "rate_CAD_EUR", json.dumps({"rate": "0.66", "fetched_at": clock.now - TTL - 5}))
    cache = make_cache(RateServiceStub(rates={}), RateServiceStub(rates={}), store=store, clock=clock)

    with caplog.at_level(logging.WARNING, logger="storefront.rates"):
        quote = cache.get_quote("CAD", "EUR")

    assert quote.rate == Decimal("0.66")
    assert quote.source == RateSource.STALE
    assert quote.degraded is True
    assert any("stale rate used" in r.getMessage() for r in caplog.records)


def test_identity_fallback_when_nothing_is_available():
    cache = make_cache(RateServiceStub(rates={}), RateServiceStub(rates={}))

    quote = cache.get_quote("CAD", "JPY")

    assert quote.rate == Decimal(1)
    assert quote.source == RateSource.FALLBACK
    assert quote.degraded is True


def test_corrupt_entry_is_ignored():
    store = InMemoryKeyValueStore()
    store.set(RATE_NAMESPACE, "rate_CAD_USD", "{not json")
    primary = RateServiceStub()
    cache = make_cache(primary, store=store)

    assert cache.get_quote("CAD", "USD").source == RateSource.PRIMARY
    assert primary.calls == 1


def test_rates_are_always_positive():
    cache = make_cache(RateServiceStub(rates={}), RateServiceStub(rates={}))
    for target in ("USD", "EUR", "XYZ"):
        assert cache.get_rate("CAD", target) > 0
