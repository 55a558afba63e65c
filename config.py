import json
import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        display_currency: str,
        fx_provider: str,
        fx_timeout_secs: float,
        fx_retries: int,
        fx_static_rates: dict[str, str],
        lock_retries: int,
        summary_window_days: int,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.display_currency = display_currency
        self.fx_provider = fx_provider
        self.fx_timeout_secs = fx_timeout_secs
        self.fx_retries = fx_retries
        self.fx_static_rates = fx_static_rates
        self.lock_retries = lock_retries
        self.summary_window_days = summary_window_days
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _parse_static_rates(raw: str) -> dict[str, str]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("LEDGER_FX_STATIC_RATES must be a JSON object") from exc
    if not isinstance(data, dict):
        raise ValueError("LEDGER_FX_STATIC_RATES must be a JSON object")
    return {str(pair).upper(): str(rate) for pair, rate in data.items()}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("LEDGER_DATABASE_URL")
    if not database_url:
        data_dir = _ensure_data_dir()
        database_url = f"sqlite:///{data_dir / 'ledger.db'}"
    return Settings(
        database_url=database_url,
        timezone=os.getenv("LEDGER_TIMEZONE", "UTC"),
        display_currency=os.getenv("LEDGER_DISPLAY_CURRENCY", "INR").upper(),
        fx_provider=os.getenv("LEDGER_FX_PROVIDER", "frankfurter"),
        fx_timeout_secs=float(os.getenv("LEDGER_FX_TIMEOUT_SECS", "5")),
        fx_retries=int(os.getenv("LEDGER_FX_RETRIES", "2")),
        fx_static_rates=_parse_static_rates(os.getenv("LEDGER_FX_STATIC_RATES", "")),
        lock_retries=int(os.getenv("LEDGER_LOCK_RETRIES", "3")),
        summary_window_days=int(os.getenv("LEDGER_SUMMARY_WINDOW_DAYS", "30")),
        log_level=os.getenv("LEDGER_LOG_LEVEL", "INFO").upper(),
    )
