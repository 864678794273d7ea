import os
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

# Paystack
PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY", "")
PAYSTACK_PUBLIC_KEY = os.getenv("PAYSTACK_PUBLIC_KEY", "")
PAYSTACK_BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
# Paystack signs webhooks with the secret key unless a dedicated secret is set
PAYSTACK_WEBHOOK_SECRET = os.getenv("PAYSTACK_WEBHOOK_SECRET") or PAYSTACK_SECRET_KEY
PAYSTACK_TIMEOUT = float(os.getenv("PAYSTACK_TIMEOUT", "30"))
PAYSTACK_RETRY_ATTEMPTS = int(os.getenv("PAYSTACK_RETRY_ATTEMPTS", "3"))

# Database
DB_HOST = os.getenv("DB_HOST")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME")
DB_USER = os.getenv("DB_USER")
DB_PASSWORD = os.getenv("DB_PASSWORD", "")
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "20"))

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL and DB_HOST and DB_NAME:
    DATABASE_URL = (
        f"postgresql+psycopg2://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}"
    )

# URLs used to build gateway callbacks
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
APP_URL = os.getenv("APP_URL", "http://localhost:8000")

JWT_SECRET = os.getenv("JWT_SECRET")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Payment workflow
PAYMENT_SESSION_MINUTES = int(os.getenv("PAYMENT_SESSION_MINUTES", "30"))
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "NGN")
WEBHOOK_MAX_RETRIES = int(os.getenv("WEBHOOK_MAX_RETRIES", "3"))
