from dotenv import load_dotenv

load_dotenv()

import os
import sys

from relaybot.core.log_setup import configure_logging
from relaybot.exchange.credentials import ExchangeCredentials
from relaybot.exchange.registry import build_connector
from relaybot.execution.models import ExecutionContext

configure_logging()

exchange = (sys.argv[1] if len(sys.argv) > 1 else os.getenv("EXCHANGE", "bitget")).lower()
prefix = exchange.upper()

key = os.getenv(f"{prefix}_API_KEY", "").strip()
secret = os.getenv(f"{prefix}_API_SECRET", "").strip()
passphrase = os.getenv(f"{prefix}_PASSPHRASE", "").strip()

if not key or not secret:
    raise SystemExit(f"Missing {prefix}_API_KEY or {prefix}_API_SECRET")
if exchange == "bitget" and not passphrase:
    raise SystemExit("Missing BITGET_PASSPHRASE")

creds = ExchangeCredentials(api_key=key, api_secret=secret, passphrase=passphrase)
ctx = ExecutionContext(user_id=0, strategy_id=0, exchange=exchange, credentials=creds)

ok, message = build_connector(ctx).validate_connection()
print(exchange, creds.masked_key, "OK" if ok else "FAILED", message)
sys.exit(0 if ok else 1)
