import os
from decimal import Decimal
from pathlib import Path
from dotenv import load_dotenv

# Force-load .env from the project root (existing environment wins)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

DATABASE_URL = os.getenv("DATABASE_URL")

# Stripe
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
STRIPE_CURRENCY = os.getenv("STRIPE_CURRENCY", "usd")

# Auth
JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Pricing
COMMISSION_RATE = Decimal(os.getenv("COMMISSION_RATE", "20"))  # percent of amount
TAX_RATE = Decimal("0.0875")  # fixed, not per jurisdiction

# Identical checkouts without an idempotency key collapse inside this window
DUPLICATE_WINDOW_SECONDS = int(os.getenv("DUPLICATE_WINDOW_SECONDS", "10"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
BUSINESS_NAME = os.getenv("BUSINESS_NAME", "MedSpa")
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]
