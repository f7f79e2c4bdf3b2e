"""User-selected display currency.

The selection is a plain key-value entry with no expiry. Until the user
picks a currency, the one for their detected location is used; the
location itself is cached for a day and falls back to the default
(Canada / CAD) when detection fails.
"""

import json
import logging
import time
from typing import Callable, Optional

from .domain import GeoLocationPort, KeyValueStorePort, Observable, UserLocation
from .pricing import is_supported

logger = logging.getLogger("storefront.pricing")

PREFERENCES_NAMESPACE = "preferences"
DEFAULT_LOCATION = UserLocation(country="Canada", country_code="CA", currency="CAD")
LOCATION_TTL_SECS = 24 * 60 * 60


class DisplayCurrencyStore(Observable):
    """Per-device display currency preference.

    Args:
        owner: Device/cart identifier the preference belongs to.
        store: Key-value store holding the preference.
        geo: Optional geolocation service used on first visit.
        default: Location used when nothing else is known.
    """

    def __init__(
        self,
        owner: str,
        store: KeyValueStorePort,
        geo: Optional[GeoLocationPort] = None,
        default: UserLocation = DEFAULT_LOCATION,
        location_ttl_secs: float = LOCATION_TTL_SECS,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__()
        self.owner = owner
        self.store = store
        self.geo = geo
        self.default = default
        self.location_ttl_secs = location_ttl_secs
        self.clock = clock

    def _key(self, name: str) -> str:
        return f"{self.owner}:{name}"

    def _cached_location(self) -> Optional[tuple[UserLocation, float]]:
        raw = self.store.get(PREFERENCES_NAMESPACE, self._key("location"))
        if not raw:
            return None
        try:
            data = json.loads(raw)
            loc = UserLocation(
                country=data["country"], country_code=data["country_code"], currency=data["currency"]
            )
            return loc, float(data["fetched_at"])
        except (ValueError, KeyError, TypeError):
            return None

    def location(self) -> UserLocation:
        """Return the user's location, detecting it when not cached."""
        cached = self._cached_location()
        if cached and self.clock() - cached[1] < self.location_ttl_secs:
            return cached[0]
        if self.geo is not None:
            try:
                loc = self.geo.locate()
                body = {
                    "country": loc.country,
                    "country_code": loc.country_code,
                    "currency": loc.currency,
                    "fetched_at": self.clock(),
                }
                self.store.set(PREFERENCES_NAMESPACE, self._key("location"), json.dumps(body))
                return loc
            except Exception as e:
                logger.warning("location lookup failed", extra={"error": str(e)})
        return cached[0] if cached else self.default

    def get(self) -> str:
        """Return the selected currency, or the one for the user's location."""
        selected = self.store.get(PREFERENCES_NAMESPACE, self._key("currency"))
        if selected and is_supported(selected):
            return selected.upper()
        detected = self.location().currency
        return detected.upper() if is_supported(detected) else self.default.currency

    def set(self, code: str) -> bool:
        """Select ``code`` as display currency. Unsupported codes are refused."""
        if not is_supported(code):
            return False
        self.store.set(PREFERENCES_NAMESPACE, self._key("currency"), code.upper())
        self._notify()
        return True
