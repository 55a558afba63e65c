import json
from decimal import Decimal
from urllib.error import URLError

import pytest

import fx_rates
from config import Settings
from errors import ConversionFailure
from fx_rates import (
    FrankfurterRateSource,
    FxRateService,
    RateCache,
    RateUnavailable,
    StaticRateSource,
    convert_minor,
    minor_unit_exponent,
    rate_source_from_settings,
)


class FakeResponse:
    def __init__(self, payload: dict) -> None:
        self.body = json.dumps(payload).encode("utf-8")

    def read(self) -> bytes:
        return self.body

    def __enter__(self) -> "FakeResponse":
        return self

    def __exit__(self, *exc) -> None:
        return None


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite+pysqlite:///:memory:",
        timezone="UTC",
        display_currency="INR",
        fx_provider="static",
        fx_timeout_secs=1.0,
        fx_retries=0,
        fx_static_rates={"EUR-INR": "90"},
        lock_retries=3,
        summary_window_days=30,
        log_level="INFO",
    )
    values.update(overrides)
    return Settings(**values)


def test_minor_unit_exponents() -> None:
    assert minor_unit_exponent("inr") == 2
    assert minor_unit_exponent("JPY") == 0
    assert minor_unit_exponent("KWD") == 3


def test_convert_minor_rescales_between_exponents() -> None:
    # 1000 yen at 0.55 INR per yen is 550 rupees.
    assert convert_minor(1_000, Decimal("0.55"), "JPY", "INR") == 55_000
    # 1.234 KWD at 270 INR per KWD is 333.18 rupees.
    assert convert_minor(1_234, Decimal("270"), "KWD", "INR") == 33_318


def test_convert_minor_rounds_half_up() -> None:
    assert convert_minor(1, Decimal("0.5"), "EUR", "USD") == 1
    assert convert_minor(-1, Decimal("0.5"), "EUR", "USD") == -1
    assert convert_minor(1, Decimal("0.49"), "EUR", "USD") == 0


def test_static_source_uses_inverse_pair() -> None:
    source = StaticRateSource({"eur-inr": "80"})

    assert source.fetch("EUR", "INR") == Decimal("80")
    assert source.fetch("INR", "EUR") == Decimal(1) / Decimal(80)
    with pytest.raises(RateUnavailable):
        source.fetch("USD", "INR")


def test_unreasonable_rates_are_rejected() -> None:
    with pytest.raises(RateUnavailable):
        StaticRateSource({"EUR-INR": "0"}).fetch("EUR", "INR")
    with pytest.raises(RateUnavailable):
        StaticRateSource({"EUR-INR": "20000"}).fetch("EUR", "INR")


def test_convert_falls_back_to_rate_one_when_unavailable() -> None:
    fx = FxRateService(source=StaticRateSource({}))

    result = fx.convert(5_000, "eur", "inr")

    assert result.ok is False
    assert result.rate == Decimal("1")
    assert result.amount == 5_000


def test_convert_same_currency_skips_lookup() -> None:
    cache = RateCache(StaticRateSource({}))
    fx = FxRateService(cache=cache)

    assert fx.convert(123, "INR", "inr").amount == 123
    assert fx.convert_strict(123, "INR", "INR") == 123
    assert cache.lookups == 0


def test_convert_strict_raises_typed_failure() -> None:
    fx = FxRateService(source=StaticRateSource({}))

    with pytest.raises(ConversionFailure) as excinfo:
        fx.convert_strict(100, "usd", "inr")

    assert excinfo.value.from_currency == "USD"
    assert excinfo.value.to_currency == "INR"
    assert excinfo.value.code == "CONVERSION_FAILURE"


def test_cache_remembers_successes_and_failures() -> None:
    cache = RateCache(StaticRateSource({"EUR-INR": "90"}))
    fx = FxRateService(cache=cache)

    fx.convert(1, "EUR", "INR")
    fx.convert(2, "EUR", "INR")
    fx.convert(1, "USD", "INR")
    fx.convert(2, "USD", "INR")

    assert cache.lookups == 2


def test_frankfurter_parses_rate(monkeypatch) -> None:
    requested = []

    def fake_urlopen(request, timeout):
        requested.append(request.full_url)
        return FakeResponse({"base": "EUR", "rates": {"INR": 89.5}})

    monkeypatch.setattr(fx_rates, "urlopen", fake_urlopen)

    rate = FrankfurterRateSource(timeout=1, retries=0).fetch("EUR", "INR")

    assert rate == Decimal("89.5")
    assert requested == ["https://api.frankfurter.app/latest?from=EUR&to=INR"]


def test_frankfurter_retries_then_gives_up(monkeypatch) -> None:
    attempts = []

    def failing_urlopen(request, timeout):
        attempts.append(request.full_url)
        raise URLError("offline")

    monkeypatch.setattr(fx_rates, "urlopen", failing_urlopen)
    monkeypatch.setattr(fx_rates.time, "sleep", lambda _delay: None)

    with pytest.raises(RateUnavailable):
        FrankfurterRateSource(timeout=1, retries=2).fetch("EUR", "INR")

    assert len(attempts) == 3


def test_frankfurter_rejects_unexpected_payload(monkeypatch) -> None:
    monkeypatch.setattr(
        fx_rates, "urlopen", lambda request, timeout: FakeResponse({"rates": {}})
    )

    with pytest.raises(RateUnavailable):
        FrankfurterRateSource(timeout=1, retries=0).fetch("EUR", "INR")


def test_rate_source_from_settings() -> None:
    static = rate_source_from_settings(make_settings())
    assert static.name == "static"
    assert static.fetch("EUR", "INR") == Decimal("90")

    remote = rate_source_from_settings(
        make_settings(fx_provider="frankfurter", fx_retries=4)
    )
    assert isinstance(remote, FrankfurterRateSource)
    assert remote.retries == 4

    with pytest.raises(ValueError):
        rate_source_from_settings(make_settings(fx_provider="carrier-pigeon"))
