"""Currency conversion against rate tables, and the live rate provider (ExchangeRate-API)."""

import logging
import os
from collections.abc import Mapping
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, NamedTuple

import requests

from .models import Currency, ExchangeRates

if TYPE_CHECKING:
    from .state import LedgerStore

logger = logging.getLogger(__name__)

API_URL = "https://v6.exchangerate-api.com/v6/{api_key}/latest/{base}"
API_KEY_ENV = "EXCHANGERATE_API_KEY"
CACHE_TTL = timedelta(hours=24)

# Used when no API key is configured or the live fetch fails with nothing cached
FALLBACK_RATES: dict[str, Decimal] = {
    "USD": Decimal("1.0"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "CAD": Decimal("1.36"),
    "AUD": Decimal("1.53"),
    "INR": Decimal("83.12"),
    "JPY": Decimal("149.50"),
}


class FXError(Exception):
    """Error fetching exchange rates."""

    pass


class Conversion(NamedTuple):
    """A converted amount, and whether a rate was actually applied."""

    amount: Decimal
    converted: bool


RateTable = ExchangeRates | Mapping[str, Decimal] | None


def _code(currency: str) -> str:
    if isinstance(currency, Currency):
        return currency.value
    return str(currency).upper()


def _rate_map(rates: RateTable) -> Mapping[str, Decimal]:
    if rates is None:
        return {}
    if isinstance(rates, ExchangeRates):
        return rates.rates
    return rates


def convert_checked(
    amount: Decimal, from_ccy: str, to_ccy: str, rates: RateTable
) -> Conversion:
    """
    Convert an amount between currencies through the table's base currency.

    Args:
        amount: Amount to convert
        from_ccy: Source currency code
        to_ccy: Target currency code
        rates: Rate table (1 base = rates[X] units of X)

    Returns:
        Conversion with the unrounded amount. If a rate is missing the amount
        comes back unchanged with converted=False.
    """
    from_code = _code(from_ccy)
    to_code = _code(to_ccy)

    # Same currency - no conversion needed
    if from_code == to_code:
        return Conversion(amount, True)

    table = _rate_map(rates)
    from_rate = table.get(from_code)
    to_rate = table.get(to_code)

    if not from_rate or not to_rate:
        logger.warning(
            "Exchange rate unavailable for %s->%s, leaving %s unconverted",
            from_code,
            to_code,
            amount,
        )
        return Conversion(amount, False)

    return Conversion(amount / from_rate * to_rate, True)


def convert(amount: Decimal, from_ccy: str, to_ccy: str, rates: RateTable) -> Decimal:
    """Convert an amount, falling back to the unconverted amount when a rate is missing."""
    return convert_checked(amount, from_ccy, to_ccy, rates).amount


def quantize(amount: Decimal, currency: str) -> Decimal:
    """Round to the currency's minor units (half up)."""
    places = Currency.parse(currency).minor_units
    exponent = Decimal(1).scaleb(-places)
    return amount.quantize(exponent, rounding=ROUND_HALF_UP)


def fallback_rates(now: datetime | None = None) -> ExchangeRates:
    """The hardcoded rate table."""
    return ExchangeRates(
        base_currency=Currency.USD.value,
        rates=dict(FALLBACK_RATES),
        fetched_at=now or datetime.now(),
    )


class RateProvider:
    """
    Supplies the rate table that new transactions snapshot.

    Rates are cached for 24h. A stale or missing cache triggers one live
    fetch; if that fails the stale cache is used, then the hardcoded table.
    When a store is given, the latest table is loaded from and saved to it.
    """

    def __init__(
        self,
        api_key: str | None = None,
        store: "LedgerStore | None" = None,
        ttl: timedelta = CACHE_TTL,
        base_currency: str = Currency.USD.value,
    ):
        self.api_key = api_key if api_key is not None else os.environ.get(API_KEY_ENV)
        self.store = store
        self.ttl = ttl
        self.base_currency = base_currency
        self._cached: ExchangeRates | None = None

    def get_cached_rates(self) -> ExchangeRates | None:
        """Latest known rate table, fresh or not."""
        if self._cached is None and self.store is not None:
            self._cached = self.store.latest_rates()
        return self._cached

    def _remember(self, rates: ExchangeRates) -> None:
        self._cached = rates
        if self.store is not None:
            self.store.save_rates(rates)

    def is_fresh(self, rates: ExchangeRates, now: datetime | None = None) -> bool:
        now = now or datetime.now()
        return now - rates.fetched_at < self.ttl

    def fetch_fresh_rates(self) -> ExchangeRates:
        """
        Fetch the current rate table from ExchangeRate-API.

        Raises:
            FXError: If no API key is set, the call fails, or the response is unusable
        """
        if not self.api_key:
            raise FXError(f"{API_KEY_ENV} not set")

        url = API_URL.format(api_key=self.api_key, base=self.base_currency)
        try:
            response = requests.get(url, timeout=10)
            response.raise_for_status()
            data = response.json()
        except requests.RequestException as e:
            raise FXError(f"Failed to fetch exchange rates: {e}") from e
        except ValueError as e:
            raise FXError(f"Invalid response from exchange rate API: {e}") from e

        if data.get("result") != "success":
            raise FXError(f"Exchange rate API error: {data.get('error-type', 'unknown')}")

        conversion_rates = data.get("conversion_rates") or {}
        # Keep only supported currencies; anything the API omits keeps its fallback value
        rates = {
            code: Decimal(str(conversion_rates[code])) if conversion_rates.get(code) else fallback
            for code, fallback in FALLBACK_RATES.items()
        }
        rates[self.base_currency] = Decimal("1.0")

        return ExchangeRates(base_currency=self.base_currency, rates=rates)

    def get_or_fetch_rates(self) -> ExchangeRates:
        """Best available rate table. Never raises for fetch problems."""
        now = datetime.now()
        cached = self.get_cached_rates()

        if cached is not None and self.is_fresh(cached, now):
            age_minutes = int((now - cached.fetched_at).total_seconds() // 60)
            logger.debug("Using cached exchange rates (age: %d minutes)", age_minutes)
            return cached

        if not self.api_key:
            logger.warning("%s not set - using fallback rates", API_KEY_ENV)
            rates = fallback_rates(now)
            self._remember(rates)
            return rates

        try:
            rates = self.fetch_fresh_rates()
        except FXError as e:
            logger.error("Failed to fetch exchange rates: %s", e)
            if cached is not None:
                logger.warning("Using stale cached rates from %s", cached.fetched_at.isoformat())
                return cached
            rates = fallback_rates(now)
            self._remember(rates)
            return rates

        logger.info("Fresh exchange rates fetched and cached")
        self._remember(rates)
        return rates
