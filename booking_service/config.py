import os

SERVICE_NAME = "booking-service"

ENVIRONMENT = os.getenv("ENVIRONMENT") or "development"
LOG_LEVEL = os.getenv("LOG_LEVEL") or "INFO"

DATABASE_URL = os.getenv("BOOKING_DB")
if not DATABASE_URL:
    raise RuntimeError("BOOKING_DB environment variable is not set")

RABBIT_URL = os.getenv("RABBIT_URL")  # optional in dev, required if you want events
REDIS_URL = os.getenv("REDIS_URL")

SERVICE_CATALOG_URL = os.getenv("SERVICE_CATALOG_URL") or "http://service-catalog:8000"
HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT") or "3.0")

PAYMENT_GATEWAY = (os.getenv("PAYMENT_GATEWAY") or "stripe").lower()
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS") or "10")

RESERVATION_TTL_MINUTES = int(os.getenv("RESERVATION_TTL_MINUTES") or "30")
RESERVATION_SWEEP_SECONDS = float(os.getenv("RESERVATION_SWEEP_SECONDS") or "300")

# "provider": a provider cannot serve two customers at once, across services.
# "service": only bookings of the same service block each other.
CONFLICT_SCOPE = (os.getenv("CONFLICT_SCOPE") or "provider").lower()

WORKDAY_OPEN = os.getenv("WORKDAY_OPEN") or "09:00"
WORKDAY_CLOSE = os.getenv("WORKDAY_CLOSE") or "18:00"

JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM") or "HS256"

if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET environment variable is not set")
