import os

# Settings are cached on first use; pin them before any project module loads.
os.environ.setdefault("LEDGER_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("LEDGER_TIMEZONE", "UTC")
os.environ.setdefault("LEDGER_DISPLAY_CURRENCY", "INR")
os.environ.setdefault("LEDGER_FX_PROVIDER", "static")
os.environ.setdefault("LEDGER_FX_STATIC_RATES", '{"USD-INR": "83.00"}')
os.environ.setdefault("LEDGER_LOCK_RETRIES", "3")
