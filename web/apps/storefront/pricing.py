"""Display-currency price formatting.

Amounts are stored and computed in the canonical currency. This module
converts them through the rate cache and renders them with Babel using a
closed table of supported currencies. Unsupported codes fall back to the
canonical currency entry, and ``PriceFormatter.format`` never raises.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from types import MappingProxyType
from typing import Mapping

from babel.numbers import format_compact_currency, format_currency

from .domain import OrderTotals

logger = logging.getLogger("storefront.pricing")

DEFAULT_CANONICAL_CURRENCY = "CAD"
COMPACT_THRESHOLD = Decimal(1000)


@dataclass(frozen=True)
class CurrencyConfig:
    """Formatting settings for a supported currency.

    Attributes:
        code: ISO 4217 code.
        symbol: Short symbol for compact UI (e.g. currency pickers).
        locale: Babel locale identifier used for number formatting.
    """

    code: str
    symbol: str
    locale: str


CURRENCY_CONFIGS: Mapping[str, CurrencyConfig] = MappingProxyType({
    c.code: c
    for c in (
        CurrencyConfig("CAD", "C$", "en_CA"),
        CurrencyConfig("USD", "$", "en_US"),
        CurrencyConfig("EUR", "€", "de_DE"),
        CurrencyConfig("GBP", "£", "en_GB"),
        CurrencyConfig("JPY", "¥", "ja_JP"),
        CurrencyConfig("AUD", "A$", "en_AU"),
        CurrencyConfig("CHF", "CHF", "de_CH"),
        CurrencyConfig("CNY", "¥", "zh_CN"),
        CurrencyConfig("INR", "₹", "en_IN"),
        CurrencyConfig("NGN", "₦", "en_NG"),
        CurrencyConfig("ZAR", "R", "en_ZA"),
        CurrencyConfig("BRL", "R$", "pt_BR"),
        CurrencyConfig("MXN", "$", "es_MX"),
        CurrencyConfig("KRW", "₩", "ko_KR"),
        CurrencyConfig("SGD", "S$", "en_SG"),
        CurrencyConfig("HKD", "HK$", "en_HK"),
        CurrencyConfig("NOK", "kr", "nb_NO"),
        CurrencyConfig("SEK", "kr", "sv_SE"),
        CurrencyConfig("DKK", "kr", "da_DK"),
        CurrencyConfig("PLN", "zł", "pl_PL"),
        CurrencyConfig("CZK", "Kč", "cs_CZ"),
        CurrencyConfig("HUF", "Ft", "hu_HU"),
        CurrencyConfig("TRY", "₺", "tr_TR"),
        CurrencyConfig("ILS", "₪", "he_IL"),
        CurrencyConfig("AED", "د.إ", "ar_AE"),
        CurrencyConfig("SAR", "﷼", "ar_SA"),
        CurrencyConfig("EGP", "E£", "ar_EG"),
        CurrencyConfig("THB", "฿", "th_TH"),
        CurrencyConfig("MYR", "RM", "ms_MY"),
        CurrencyConfig("IDR", "Rp", "id_ID"),
        CurrencyConfig("PHP", "₱", "en_PH"),
        CurrencyConfig("VND", "₫", "vi_VN"),
    )
})


def is_supported(code: str | None) -> bool:
    return (code or "").upper() in CURRENCY_CONFIGS


def canonical_config(canonical: str) -> CurrencyConfig:
    """Return the config for the canonical currency.

    A canonical code missing from the table is rendered with the default
    canonical locale and its own code as symbol.
    """
    code = (canonical or DEFAULT_CANONICAL_CURRENCY).upper()
    return CURRENCY_CONFIGS.get(code) or CurrencyConfig(code, code, CURRENCY_CONFIGS[DEFAULT_CANONICAL_CURRENCY].locale)


def config_for(code: str | None, canonical: str = DEFAULT_CANONICAL_CURRENCY) -> CurrencyConfig:
    """Return the config for ``code``, or the canonical currency's config."""
    return CURRENCY_CONFIGS.get((code or "").upper()) or canonical_config(canonical)


def currency_symbol(code: str) -> str:
    """Return the configured symbol for ``code``, or the code itself."""
    cfg = CURRENCY_CONFIGS.get((code or "").upper())
    return cfg.symbol if cfg else code


def _non_negative_zero(amount: Decimal) -> Decimal:
    # Decimal("-0") would otherwise render with a minus sign
    return Decimal(0) if amount == 0 else amount


def _render(amount: Decimal, cfg: CurrencyConfig, compact: bool = False) -> str:
    amount = _non_negative_zero(Decimal(amount))
    if compact and amount >= COMPACT_THRESHOLD:
        return format_compact_currency(amount, cfg.code, locale=cfg.locale, fraction_digits=1)
    return format_currency(amount, cfg.code, locale=cfg.locale, currency_digits=False)


def format_price_sync(amount: Decimal, currency: str, canonical: str = DEFAULT_CANONICAL_CURRENCY) -> str:
    """Format an amount already expressed in ``currency`` (no conversion)."""
    return _render(Decimal(amount), config_for(currency, canonical))


class PriceFormatter:
    """Converts canonical amounts to a display currency and renders them.

    Args:
        rates: Object exposing ``get_rate(from, to)`` (normally ``RateCache``).
        canonical_currency: Currency every stored amount is expressed in.
    """

    def __init__(self, rates, canonical_currency: str = DEFAULT_CANONICAL_CURRENCY):
        self.rates = rates
        self.canonical_currency = canonical_currency.upper()
        if not is_supported(self.canonical_currency):
            logger.warning(
                "canonical currency has no formatting entry, using defaults",
                extra={"canonical_currency": self.canonical_currency},
            )

    def convert(self, amount: Decimal, target_currency: str) -> Decimal:
        """Convert a canonical amount into ``target_currency``."""
        target = target_currency.upper()
        if target == self.canonical_currency:
            return Decimal(amount)
        return Decimal(amount) * self.rates.get_rate(self.canonical_currency, target)

    def format(
        self,
        amount: Decimal,
        target_currency: str,
        show_canonical_equivalent: bool = False,
        compact: bool = False,
        show_currency_code: bool = False,
    ) -> str:
        """Render a canonical amount in ``target_currency``.

        Unsupported target codes are rendered in the canonical currency. On
        any conversion or locale failure the canonical amount is rendered
        in the canonical currency instead and the error is logged.
        """
        canonical_cfg = canonical_config(self.canonical_currency)
        try:
            cfg = config_for(target_currency, self.canonical_currency)
            converted = self.convert(amount, cfg.code)
            text = _render(converted, cfg, compact=compact)
            if cfg.code != self.canonical_currency:
                if show_currency_code:
                    text += f" {cfg.code}"
                if show_canonical_equivalent:
                    text += f" ({_render(Decimal(amount), canonical_cfg)} {self.canonical_currency})"
            return text
        except Exception:
            logger.error(
                "error formatting price, falling back to canonical currency",
                extra={"target_currency": target_currency},
                exc_info=True,
            )
        try:
            return _render(Decimal(amount), canonical_cfg)
        except Exception:
            logger.error("canonical formatting failed", extra={"amount": repr(amount)}, exc_info=True)
            return f"{amount} {self.canonical_currency}"

    def format_totals(self, totals: OrderTotals, target_currency: str) -> dict:
        """Format every totals field after the totals were computed."""
        return {
            name: self.format(getattr(totals, name), target_currency)
            for name in ("subtotal", "tax", "shipping", "total")
        }
