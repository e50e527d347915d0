import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./hospital_booking.db")

# Booking policy
BOOKING_MIN_HOURS_AHEAD = int(os.getenv("BOOKING_MIN_HOURS_AHEAD", "24"))
BOOKING_MAX_DAYS_AHEAD = int(os.getenv("BOOKING_MAX_DAYS_AHEAD", "90"))
# Business hours, 24h clock. Appointments must start in [start, end)
BUSINESS_HOURS_START = int(os.getenv("BUSINESS_HOURS_START", "9"))
BUSINESS_HOURS_END = int(os.getenv("BUSINESS_HOURS_END", "17"))
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "USD")

# Payment gateway (remote charge/refund capability)
PAYMENT_GATEWAY_URL = os.getenv("PAYMENT_GATEWAY_URL", "http://localhost:8090/v1")
PAYMENT_GATEWAY_API_KEY = os.getenv("PAYMENT_GATEWAY_API_KEY")
PAYMENT_GATEWAY_TIMEOUT = float(os.getenv("PAYMENT_GATEWAY_TIMEOUT", "30.0"))
PAYMENT_MAX_ATTEMPTS = int(os.getenv("PAYMENT_MAX_ATTEMPTS", "3"))
# Backoff between attempts is base * 2^attempt seconds
PAYMENT_RETRY_BASE_DELAY = float(os.getenv("PAYMENT_RETRY_BASE_DELAY", "1.0"))
PAYMENT_MAX_AMOUNT = float(os.getenv("PAYMENT_MAX_AMOUNT", "10000"))

# Fraud scoring thresholds (0-100 risk score)
FRAUD_BLOCK_THRESHOLD = int(os.getenv("FRAUD_BLOCK_THRESHOLD", "80"))
FRAUD_WARN_THRESHOLD = int(os.getenv("FRAUD_WARN_THRESHOLD", "60"))

# Audit sink
AUDIT_QUEUE_SIZE = int(os.getenv("AUDIT_QUEUE_SIZE", "1000"))
AUDIT_ENABLED = os.getenv("AUDIT_ENABLED", "true").lower() == "true"

# Frontend / CORS
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:5173,http://localhost:3000",
).split(",")
