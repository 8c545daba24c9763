"""Configuration module for the Ask the Stars billing backend."""

import logging
import os

from dotenv import load_dotenv

# Load environment variables from .env file if present
load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

# Suppress verbose logs from third-party libraries
logging.getLogger('stripe').setLevel(logging.INFO)
logging.getLogger('httpx').setLevel(logging.INFO)
logging.getLogger('httpcore').setLevel(logging.INFO)
logging.getLogger('urllib3').setLevel(logging.INFO)
logging.getLogger('google').setLevel(logging.WARNING)
logging.getLogger('root').setLevel(logging.INFO)

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Ignoring non-numeric value for {name}: {value!r}")
        return default


# Stripe
STRIPE_SECRET_KEY = os.getenv('STRIPE_SECRET_KEY')
STRIPE_WEBHOOK_SECRET = os.getenv('STRIPE_WEBHOOK_SECRET')
STRIPE_PRICE_WEEKLY = os.getenv('STRIPE_PRICE_WEEKLY')
STRIPE_PRICE_ANNUAL = os.getenv('STRIPE_PRICE_ANNUAL')
STRIPE_AUTOMATIC_TAX = _env_flag('STRIPE_AUTOMATIC_TAX')
STRIPE_TIMEOUT_SECONDS = _env_float('STRIPE_TIMEOUT_SECONDS', 10.0)

# Firestore
FIRESTORE_DATABASE_ID = os.getenv('FIRESTORE_DATABASE_ID')
ENTITLEMENT_STORE_BACKEND = os.getenv('ENTITLEMENT_STORE_BACKEND', 'firestore').lower()

# Public web app, used for checkout redirects
APP_BASE_URL = os.getenv('APP_BASE_URL', 'https://lunatica-client.vercel.app').rstrip('/')

# Webhook handling must finish inside Stripe's delivery timeout
WEBHOOK_DEADLINE_SECONDS = _env_float('WEBHOOK_DEADLINE_SECONDS', 20.0)

# Post-checkout entitlement polling
CHECKOUT_POLL_INTERVAL_SECONDS = _env_float('CHECKOUT_POLL_INTERVAL_SECONDS', 2.0)
CHECKOUT_POLL_TIMEOUT_SECONDS = _env_float('CHECKOUT_POLL_TIMEOUT_SECONDS', 60.0)

# App configuration
APP_TITLE = "Ask the Stars Billing API"
APP_VERSION = "1.0.0"

# CORS configuration
CORS_ORIGINS = ["*"]  # In production, specify the web client's domain
CORS_CREDENTIALS = True
CORS_METHODS = ["*"]
CORS_HEADERS = ["*"]


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the specified name."""
    return logging.getLogger(name)
