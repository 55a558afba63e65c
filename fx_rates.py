from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Protocol
from urllib.error import URLError
from urllib.request import Request, urlopen

from config import Settings, get_settings
from errors import ConversionFailure

logger = logging.getLogger(__name__)

ONE = Decimal("1")
MIN_SANE_RATE = Decimal("0.0001")
MAX_SANE_RATE = Decimal("10000")

# ISO 4217 minor-unit exponents that differ from the default of 2.
_MINOR_UNIT_EXPONENTS: dict[str, int] = {
    "BIF": 0,
    "CLP": 0,
    "ISK": 0,
    "JPY": 0,
    "KRW": 0,
    "PYG": 0,
    "UGX": 0,
    "VND": 0,
    "XAF": 0,
    "XOF": 0,
    "BHD": 3,
    "IQD": 3,
    "JOD": 3,
    "KWD": 3,
    "LYD": 3,
    "OMR": 3,
    "TND": 3,
}


def minor_unit_exponent(currency: str) -> int:
    return _MINOR_UNIT_EXPONENTS.get(currency.upper(), 2)


def convert_minor(amount: int, rate: Decimal, from_currency: str, to_currency: str) -> int:
    """Convert integer minor units of one currency into another.

    ``rate`` is quote units per one base unit. The result is rounded half-up
    to the target currency's minor unit.
    """
    scale = minor_unit_exponent(to_currency) - minor_unit_exponent(from_currency)
    value = Decimal(amount) * rate * (Decimal(10) ** scale)
    return int(value.quantize(ONE, rounding=ROUND_HALF_UP))


class RateUnavailable(Exception):
    pass


@dataclass(frozen=True)
class FxQuote:
    provider: str
    base: str
    quote: str
    rate: Decimal  # quote per 1 base
    fetched_at: datetime


@dataclass(frozen=True)
class Conversion:
    amount: int
    rate: Decimal
    ok: bool


class RateSource(Protocol):
    name: str

    def fetch(self, base: str, quote: str) -> Decimal: ...


class FrankfurterRateSource:
    name = "frankfurter"

    def __init__(
        self, timeout: float = 5.0, retries: int = 2, backoff_secs: float = 0.5
    ) -> None:
        self.timeout = timeout
        self.retries = retries
        self.backoff_secs = backoff_secs

    def fetch(self, base: str, quote: str) -> Decimal:
        attempt = 0
        while True:
            try:
                return self._fetch_once(base, quote)
            except RateUnavailable:
                if attempt >= self.retries:
                    raise
                delay = self.backoff_secs * (2**attempt)
                attempt += 1
                logger.info(
                    f"fx_retry: pair={base}-{quote} attempt={attempt} delay={delay}"
                )
                time.sleep(delay)

    def _fetch_once(self, base: str, quote: str) -> Decimal:
        url = f"https://api.frankfurter.app/latest?from={base}&to={quote}"
        req = Request(url, headers={"Accept": "application/json"})
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except (URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise RateUnavailable(
                f"Failed to fetch FX rate from Frankfurter for {base}-{quote}"
            ) from exc

        try:
            rate = Decimal(str(payload["rates"][quote]))
        except (KeyError, TypeError, InvalidOperation) as exc:
            raise RateUnavailable("Unexpected FX provider response") from exc
        return _checked_rate(rate, base, quote)


class StaticRateSource:
    name = "static"

    def __init__(self, rates: dict[str, str | Decimal]) -> None:
        self.rates = {pair.upper(): Decimal(str(rate)) for pair, rate in rates.items()}

    def fetch(self, base: str, quote: str) -> Decimal:
        direct = self.rates.get(f"{base}-{quote}")
        if direct is not None:
            return _checked_rate(direct, base, quote)
        inverse = self.rates.get(f"{quote}-{base}")
        if inverse is not None and inverse != 0:
            return _checked_rate(ONE / inverse, base, quote)
        raise RateUnavailable(f"No static rate configured for {base}-{quote}")


def _checked_rate(rate: Decimal, base: str, quote: str) -> Decimal:
    if rate <= MIN_SANE_RATE or rate > MAX_SANE_RATE:
        raise RateUnavailable(f"Unreasonable exchange rate for {base}-{quote}: {rate}")
    return rate


def rate_source_from_settings(settings: Optional[Settings] = None) -> RateSource:
    settings = settings or get_settings()
    provider = (settings.fx_provider or "frankfurter").lower()
    if provider == "frankfurter":
        return FrankfurterRateSource(
            timeout=settings.fx_timeout_secs, retries=settings.fx_retries
        )
    if provider == "static":
        return StaticRateSource(settings.fx_static_rates)
    raise ValueError(f"Unsupported FX provider: {provider}")


class RateCache:
    """Rates looked up during one request.

    Successes and failures are both remembered so a single response uses one
    rate per currency pair and a failing pair is asked for only once.
    """

    def __init__(self, source: RateSource) -> None:
        self.source = source
        self._quotes: dict[tuple[str, str], FxQuote] = {}
        self._failures: dict[tuple[str, str], str] = {}
        self.lookups = 0

    def quote(self, base: str, quote: str) -> FxQuote:
        key = (base, quote)
        cached = self._quotes.get(key)
        if cached is not None:
            return cached
        if key in self._failures:
            raise RateUnavailable(self._failures[key])

        self.lookups += 1
        try:
            rate = self.source.fetch(base, quote)
        except RateUnavailable as exc:
            self._failures[key] = str(exc)
            raise
        fx_quote = FxQuote(
            provider=self.source.name,
            base=base,
            quote=quote,
            rate=rate,
            fetched_at=datetime.now(timezone.utc),
        )
        self._quotes[key] = fx_quote
        return fx_quote


class FxRateService:
    def __init__(
        self,
        source: Optional[RateSource] = None,
        cache: Optional[RateCache] = None,
    ) -> None:
        if cache is not None:
            self.cache = cache
        else:
            self.cache = RateCache(source or rate_source_from_settings())

    def convert(self, amount: int, from_currency: str, to_currency: str) -> Conversion:
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if from_currency == to_currency:
            return Conversion(amount=amount, rate=ONE, ok=True)
        try:
            quote = self.cache.quote(from_currency, to_currency)
        except RateUnavailable as exc:
            logger.warning(
                f"fx_fallback: pair={from_currency}-{to_currency} rate=1 reason={exc}"
            )
            converted = convert_minor(amount, ONE, from_currency, to_currency)
            return Conversion(amount=converted, rate=ONE, ok=False)
        converted = convert_minor(amount, quote.rate, from_currency, to_currency)
        return Conversion(amount=converted, rate=quote.rate, ok=True)

    def convert_strict(self, amount: int, from_currency: str, to_currency: str) -> int:
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        if from_currency == to_currency:
            return amount
        try:
            quote = self.cache.quote(from_currency, to_currency)
        except RateUnavailable as exc:
            raise ConversionFailure(from_currency, to_currency, str(exc)) from exc
        return convert_minor(amount, quote.rate, from_currency, to_currency)
