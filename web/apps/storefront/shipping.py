"""Shipping fee rules.

``shipping_cost`` is a pure function of the destination so it can be
re-evaluated on every change of the destination form.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import FrozenSet


@dataclass(frozen=True)
class ShippingRules:
    """Flat-rate shipping table.

    Attributes:
        domestic_country: ISO country code treated as domestic.
        local_regions: Region codes inside the domestic country that ship free.
        domestic_rate: Fee for any other domestic region.
        international_rate: Fee for every other country.
    """

    domestic_country: str = "CA"
    local_regions: FrozenSet[str] = frozenset({"ON"})
    domestic_rate: Decimal = Decimal("15.00")
    international_rate: Decimal = Decimal("30.00")


DEFAULT_RULES = ShippingRules()


def _norm(code: str | None) -> str:
    return (code or "").strip().upper()


def shipping_cost(country_code: str, region: str, rules: ShippingRules = DEFAULT_RULES) -> Decimal:
    """Return the shipping fee for a destination.

    Args:
        country_code: Destination country (ISO 3166 alpha-2, any case).
        region: Destination region/province code (any case).
        rules: Rate table to apply.

    Returns:
        Decimal: Non-negative fee in the canonical currency.
    """
    country = _norm(country_code)
    if country == _norm(rules.domestic_country):
        if _norm(region) in {_norm(r) for r in rules.local_regions}:
            return Decimal("0.00")
        return rules.domestic_rate
    return rules.international_rate
