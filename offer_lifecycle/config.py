import os
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()

SUPABASE_URL = os.getenv("SUPABASE_URL", "http://localhost:54321")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
SUPABASE_ANON_KEY = os.getenv("SUPABASE_ANON_KEY", "")

# "memory" keeps everything in-process (dev / tests), "supabase" talks to the hosted row store
STORE_BACKEND = os.getenv("STORE_BACKEND", "memory")

# Bearer key for the periodic expiry sweep (cron caller, not a user)
SWEEP_API_KEY = os.getenv("SWEEP_API_KEY", "")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
JSON_LOGS = os.getenv("JSON_LOGS", "0") == "1"

HTTP_TIMEOUT = float(os.getenv("STORE_HTTP_TIMEOUT", "15"))

SLA_WINDOW = timedelta(hours=24)
OFFER_RESPONSE_WINDOW = timedelta(days=7)
# 200 USD expressed in cents
MAX_PRICE_SPREAD_CENTS = 200 * 100
# 10,000,000 USD; keeps every stored amount inside a Postgres integer column
MAX_PRICE_CENTS = 10_000_000 * 100
CURRENCY = "USD"
