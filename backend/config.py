import os

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./license.db")

# Lease token (JWT) configuration
# In production, set SECRET_KEY environment variable to a secure random value
SECRET_KEY = os.getenv(
    "SECRET_KEY",
    "dev-secret-key-change-in-production-abc123xyz789"  # Default for development only
)
ALGORITHM = "HS256"
LEASE_TOKEN_EXPIRE_HOURS = int(os.getenv("LEASE_TOKEN_EXPIRE_HOURS", "24"))

# Stripe (billing provider)
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
DEFAULT_PAID_PLAN = os.getenv("DEFAULT_PAID_PLAN", "basic")

# Abuse mitigation
DEFAULT_MAX_DEVICES_PER_USER = int(os.getenv("DEFAULT_MAX_DEVICES_PER_USER", "2"))
MAX_DEVICES_PER_IP_PER_24H = int(os.getenv("MAX_DEVICES_PER_IP_PER_24H", "5"))
MAX_DEVICES_PER_USER_PER_24H = int(os.getenv("MAX_DEVICES_PER_USER_PER_24H", "3"))
DEVICE_CHURN_THRESHOLD = int(os.getenv("DEVICE_CHURN_THRESHOLD", "5"))
DEVICE_CHURN_WINDOW_MINUTES = int(os.getenv("DEVICE_CHURN_WINDOW_MINUTES", "60"))
RAPID_CREATION_INTERVAL_SECONDS = int(os.getenv("RAPID_CREATION_INTERVAL_SECONDS", "60"))

# "block" rejects the registration, "detect" only records a risk event
DEVICE_CAP_MODE = os.getenv("DEVICE_CAP_MODE", "block")
RATE_LIMIT_MODE = os.getenv("RATE_LIMIT_MODE", "block")

# Request throttling on the registration endpoint (slowapi syntax)
REGISTER_RATE_LIMIT = os.getenv("REGISTER_RATE_LIMIT", "30/minute")

# Only honour X-Forwarded-For when a reverse proxy sets it; clients can forge it
TRUST_PROXY_HEADERS = os.getenv("TRUST_PROXY_HEADERS", "false").lower() in ("1", "true", "yes")

# Maintenance
RATE_LIMIT_RETENTION_DAYS = int(os.getenv("RATE_LIMIT_RETENTION_DAYS", "7"))
RISK_EVENT_RETENTION_DAYS = int(os.getenv("RISK_EVENT_RETENTION_DAYS", "90"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:5173,http://127.0.0.1:3000,http://127.0.0.1:5173",
    ).split(",")
    if origin.strip()
]
