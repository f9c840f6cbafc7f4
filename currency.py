"""
Locale / currency resolution for pricing.

resolve_country() walks a strict fallback chain and never raises:
  1. timezone string  -> country (small city-substring table)
  2. locale string    -> country
  3. geo-IP lookup    -> country (bounded by GEOIP_TIMEOUT, fails closed)
  4. DEFAULT_COUNTRY

convert() turns a base-currency (INR) amount into the country's currency
using the static rate table, rounding half up and never letting a paid
amount fall to zero.
"""

import logging
import math
import os
import re
import time
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import requests

from errors import InvalidInput
from ps_trace import get_trace
from scoring_config import TIER_BASE_PRICES

logger = logging.getLogger(__name__)

BASE_CURRENCY = "INR"
DEFAULT_COUNTRY = "IN"
GEOIP_URL = os.environ.get("GEOIP_URL", "https://ipapi.co").rstrip("/")
GEOIP_TIMEOUT = 3  # seconds

_COUNTRY_CODE_RE = re.compile(r"^[A-Z]{2}$")


@dataclass(frozen=True)
class Currency:
    code: str
    symbol: str
    rate: float             # units of this currency per 1 INR
    minor_exponent: int = 2


@dataclass(frozen=True)
class ConvertedPrice:
    amount: int
    currency_code: str
    symbol: str

    @property
    def formatted(self) -> str:
        return f"{self.symbol}{self.amount}"

    def to_dict(self) -> dict:
        return {
            "amount": self.amount,
            "currency_code": self.currency_code,
            "symbol": self.symbol,
            "formatted": self.formatted,
        }


# =============================================================================
# Static lookup data
# =============================================================================

CURRENCIES: Dict[str, Currency] = {c.code: c for c in (
    Currency("INR", "₹", 1.0),
    Currency("USD", "$", 0.012),
    Currency("EUR", "€", 0.011),
    Currency("GBP", "£", 0.0095),
    Currency("CAD", "C$", 0.016),
    Currency("AUD", "A$", 0.018),
    Currency("SGD", "S$", 0.016),
    Currency("AED", "د.إ", 0.044),
    Currency("SAR", "﷼", 0.045),
    Currency("JPY", "¥", 1.8, minor_exponent=0),
    Currency("CNY", "¥", 0.085),
    Currency("KRW", "₩", 16, minor_exponent=0),
    Currency("THB", "฿", 0.42),
    Currency("MYR", "RM", 0.053),
    Currency("IDR", "Rp", 190),
    Currency("PHP", "₱", 0.67),
    Currency("VND", "₫", 290, minor_exponent=0),
    Currency("BDT", "৳", 1.4),
    Currency("PKR", "₨", 3.3),
    Currency("LKR", "₨", 3.6),
    Currency("NPR", "₨", 1.6),
    Currency("ZAR", "R", 0.22),
    Currency("EGP", "£", 0.58),
    Currency("NGN", "₦", 18),
    Currency("KES", "Sh", 1.6),
    Currency("BRL", "R$", 0.061),
    Currency("MXN", "$", 0.25),
    Currency("CLP", "$", 11.5, minor_exponent=0),
    Currency("COP", "$", 50),
    Currency("PEN", "S/", 0.045),
    Currency("RUB", "₽", 1.1),
    Currency("TRY", "₺", 0.4),
    Currency("ILS", "₪", 0.044),
)}

COUNTRY_CURRENCY: Dict[str, str] = {
    "US": "USD", "GB": "GBP", "CA": "CAD", "AU": "AUD", "SG": "SGD",
    "AE": "AED", "SA": "SAR", "JP": "JPY", "CN": "CNY", "KR": "KRW",
    "TH": "THB", "MY": "MYR", "ID": "IDR", "PH": "PHP", "VN": "VND",
    "BD": "BDT", "PK": "PKR", "LK": "LKR", "NP": "NPR", "ZA": "ZAR",
    "EG": "EGP", "NG": "NGN", "KE": "KES", "BR": "BRL", "MX": "MXN",
    "CL": "CLP", "CO": "COP", "PE": "PEN", "RU": "RUB", "TR": "TRY",
    "IL": "ILS", "IN": "INR",
    "DE": "EUR", "FR": "EUR", "IT": "EUR", "ES": "EUR", "NL": "EUR",
    "BE": "EUR", "AT": "EUR", "PT": "EUR", "IE": "EUR", "FI": "EUR",
    "GR": "EUR",
}

# Checked in order; first substring hit wins.
TIMEZONE_COUNTRIES: Tuple[Tuple[str, str], ...] = (
    ("Kolkata", "IN"),
    ("Calcutta", "IN"),
    ("Mumbai", "IN"),
    ("New_York", "US"),
    ("Chicago", "US"),
    ("Los_Angeles", "US"),
    ("Denver", "US"),
    ("London", "GB"),
    ("Dubai", "AE"),
    ("Singapore", "SG"),
)

LOCALE_COUNTRIES: Tuple[Tuple[str, str], ...] = (
    ("en-IN", "IN"),
    ("hi", "IN"),
    ("en-US", "US"),
    ("en-GB", "GB"),
)


# =============================================================================
# Country resolution
# =============================================================================

def country_from_timezone(timezone: Optional[str]) -> Optional[str]:
    if not timezone:
        return None
    for needle, country in TIMEZONE_COUNTRIES:
        if needle in timezone:
            return country
    return None


def country_from_locale(locale: Optional[str]) -> Optional[str]:
    """Match a locale or Accept-Language value. Only the first tag counts."""
    if not locale:
        return None
    tag = locale.split(",")[0].split(";")[0].strip().replace("_", "-")
    for needle, country in LOCALE_COUNTRIES:
        # Bare language codes ("hi") must match the language part exactly.
        if "-" in needle:
            if tag.lower().startswith(needle.lower()):
                return country
        elif tag.split("-")[0].lower() == needle:
            return country
    return None


def country_from_geoip(client_ip: Optional[str] = None, timeout: float = GEOIP_TIMEOUT) -> Optional[str]:
    """Geo-IP lookup. Any failure (timeout, HTTP error, bad payload) returns None."""
    url = f"{GEOIP_URL}/{client_ip}/json/" if client_ip else f"{GEOIP_URL}/json/"
    trace = get_trace()
    t0 = time.time()
    try:
        resp = requests.get(url, headers={"Accept": "application/json"}, timeout=timeout)
    except requests.RequestException as e:
        logger.warning("Geo-IP lookup failed: %s", e)
        return None
    if trace:
        trace.record_call("geoip", "lookup", int((time.time() - t0) * 1000),
                          resp.status_code, "OK" if resp.ok else "ERROR")
    if not resp.ok:
        logger.warning("Geo-IP lookup returned HTTP %d", resp.status_code)
        return None
    try:
        code = (resp.json().get("country_code") or "").upper()
    except (ValueError, AttributeError):
        return None
    return code if _COUNTRY_CODE_RE.match(code) else None


def resolve_country(
    timezone: Optional[str] = None,
    locale: Optional[str] = None,
    client_ip: Optional[str] = None,
    use_geoip: bool = True,
) -> str:
    """Resolve the payer's country. Never fails; degrades to DEFAULT_COUNTRY.

    timezone/locale default to the process environment (TZ, LC_ALL, LANG).
    """
    if timezone is None:
        timezone = os.environ.get("TZ")
    if locale is None:
        locale = os.environ.get("LC_ALL") or os.environ.get("LANG")

    country = country_from_timezone(timezone)
    if country:
        return country
    country = country_from_locale(locale)
    if country:
        return country
    if use_geoip:
        country = country_from_geoip(client_ip)
        if country:
            return country
    logger.info("Country detection inconclusive, using default %s", DEFAULT_COUNTRY)
    return DEFAULT_COUNTRY


# =============================================================================
# Conversion
# =============================================================================

def currency_for_country(country_code: Optional[str]) -> Currency:
    code = COUNTRY_CURRENCY.get((country_code or "").upper(), BASE_CURRENCY)
    return CURRENCIES[code]


def convert(amount_base: float, country_code: Optional[str]) -> ConvertedPrice:
    """Convert a base-currency amount into the country's currency.

    Rounds half up to a whole unit (floor(x + 0.5), not banker's rounding)
    and floors any positive amount at 1 unit so the gateway never sees a
    zero-amount order.
    """
    if amount_base is None or amount_base < 0:
        raise InvalidInput("amount must be a non-negative number")
    currency = currency_for_country(country_code)
    amount = int(math.floor(amount_base * currency.rate + 0.5))
    if amount_base > 0 and amount < 1:
        amount = 1
    return ConvertedPrice(amount=amount, currency_code=currency.code, symbol=currency.symbol)


def to_minor_units(price: ConvertedPrice) -> int:
    """Amount in the smallest currency unit, as the gateway expects it."""
    currency = CURRENCIES.get(price.currency_code, CURRENCIES[BASE_CURRENCY])
    return price.amount * (10 ** currency.minor_exponent)


def tier_prices(country_code: Optional[str]) -> Dict[str, dict]:
    """Converted price for every tier, for pricing display."""
    return {
        tier: convert(base, country_code).to_dict()
        for tier, base in TIER_BASE_PRICES.items()
    }
