"""Foreign-exchange rate cache.

Rates are memoized per currency pair in a key-value store for a fixed
validity window (12 hours by default). Lookups fall through

    cache (fresh) -> primary service -> secondary service
        -> cache (stale) -> identity

and every step past the secondary service is a degraded answer that
callers must not treat as authoritative (see ``RateQuote.degraded``).
"""

import json
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional, Tuple

from .domain import KeyValueStorePort, RateQuote, RateServicePort, RateSource, RateUnavailableError

logger = logging.getLogger("storefront.rates")

RATE_NAMESPACE = "fx_rate"
DEFAULT_TTL_SECS = 12 * 60 * 60


def _pair_key(from_currency: str, to_currency: str) -> str:
    return f"rate_{from_currency}_{to_currency}"


def _positive_rate(value) -> Decimal:
    """Coerce a service/cached value into a positive Decimal rate.

    Raises:
        RateUnavailableError: When the value is missing, non-numeric or <= 0.
    """
    try:
        rate = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise RateUnavailableError(f"invalid rate: {value!r}")
    if not rate.is_finite() or rate <= 0:
        raise RateUnavailableError(f"invalid rate: {value!r}")
    return rate


class RateCache:
    """Memoizing rate lookup with a two-tier service fallback.

    Cache entries are JSON documents ``{"rate": "1.23", "fetched_at": ts}``
    keyed by currency pair; writes overwrite, so at most one entry exists
    per pair. No lock is taken: concurrent misses for the same pair may each
    hit the network and the last write wins.
    """

    def __init__(
        self,
        primary: RateServicePort,
        secondary: RateServicePort,
        store: KeyValueStorePort,
        ttl_secs: float = DEFAULT_TTL_SECS,
        clock: Callable[[], float] = time.time,
    ):
        self.primary = primary
        self.secondary = secondary
        self.store = store
        self.ttl_secs = ttl_secs
        self.clock = clock

    # ---- cache entries ----
    def _read_entry(self, from_currency: str, to_currency: str) -> Optional[Tuple[Decimal, float]]:
        raw = self.store.get(RATE_NAMESPACE, _pair_key(from_currency, to_currency))
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return _positive_rate(data["rate"]), float(data["fetched_at"])
        except (ValueError, KeyError, TypeError, RateUnavailableError):
            logger.warning("discarding unreadable rate entry", extra={"pair": f"{from_currency}/{to_currency}"})
            return None

    def _write_entry(self, from_currency: str, to_currency: str, rate: Decimal) -> None:
        body = json.dumps({"rate": str(rate), "fetched_at": self.clock()})
        self.store.set(RATE_NAMESPACE, _pair_key(from_currency, to_currency), body)

    def _fetch(self, service: RateServicePort, name: str, from_currency: str, to_currency: str) -> Optional[Decimal]:
        try:
            return _positive_rate(service.get_rate(from_currency, to_currency))
        except Exception as e:
            logger.warning(
                "%s rate service failed", name,
                extra={"pair": f"{from_currency}/{to_currency}", "error": str(e)},
            )
            return None

    # ---- public API ----
    def get_quote(self, from_currency: str, to_currency: str) -> RateQuote:
        """Return the rate for a pair together with where it came from."""
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if from_currency == to_currency:
            return RateQuote(Decimal(1), RateSource.IDENTITY)

        entry = self._read_entry(from_currency, to_currency)
        if entry is not None:
            rate, fetched_at = entry
            if self.clock() - fetched_at < self.ttl_secs:
                return RateQuote(rate, RateSource.CACHE)

        for service, name, source in (
            (self.primary, "primary", RateSource.PRIMARY),
            (self.secondary, "secondary", RateSource.SECONDARY),
        ):
            rate = self._fetch(service, name, from_currency, to_currency)
            if rate is not None:
                self._write_entry(from_currency, to_currency, rate)
                return RateQuote(rate, source)

        if entry is not None:
            logger.warning("stale rate used", extra={"pair": f"{from_currency}/{to_currency}"})
            return RateQuote(entry[0], RateSource.STALE)

        logger.error(
            "all rate sources failed, using 1:1 conversion",
            extra={"pair": f"{from_currency}/{to_currency}"},
        )
        return RateQuote(Decimal(1), RateSource.FALLBACK)

    def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        """Return a positive multiplier converting ``from_currency`` to ``to_currency``."""
        return self.get_quote(from_currency, to_currency).rate
