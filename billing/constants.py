"""Centralized application constants — single source of truth for hardcoded values."""

# --- Session ---
COOKIE_NAME = "marketup_session"

# --- Subscriptions ---
SUBSCRIPTION_PERIOD_DAYS = 30

# External plan identifiers (plan slugs, tier names) -> internal tier.
PLAN_TIERS = {
    "free": "BASIC",
    "basic": "BASIC",
    "pro": "STANDARD",
    "standard": "STANDARD",
    "premium": "PREMIUM",
}

# Catalog prices in minor units, per currency. Checkout never trusts client amounts.
PLAN_PRICES = {
    "basic": {"USD": 999, "SEK": 9900},
    "pro": {"USD": 2999, "SEK": 29900},
    "premium": {"USD": 4999, "SEK": 49900},
}
DEFAULT_CURRENCY = "USD"
SWISH_CURRENCY = "SEK"

# ISO 4217 currencies whose minor unit exponent differs from 2.
CURRENCY_EXPONENTS = {
    "BIF": 0, "CLP": 0, "DJF": 0, "GNF": 0, "JPY": 0, "KMF": 0, "KRW": 0,
    "MGA": 0, "PYG": 0, "RWF": 0, "UGX": 0, "VND": 0, "VUV": 0, "XAF": 0,
    "XOF": 0, "XPF": 0,
    "BHD": 3, "JOD": 3, "KWD": 3, "OMR": 3, "TND": 3,
}

# --- Stripe ---
STRIPE_SIGNATURE_HEADER = "stripe-signature"
STRIPE_ACK_BODY = {"received": True}

# --- Adyen ---
ADYEN_SIGNATURE_HEADER = "adyen-signature"
ADYEN_ACK_BODY = "[accepted]"
ADYEN_REFERENCE_PREFIX = "marketup"

# --- PayPal ---
PAYPAL_TOKEN_PATH = "/v1/oauth2/token"
PAYPAL_ORDERS_PATH = "/v2/checkout/orders"
PAYPAL_BRAND_NAME = "MarketUp"

# --- HTTP Client ---
HTTP_TOTAL_TIMEOUT = 30  # seconds
HTTP_CONNECT_TIMEOUT = 10  # seconds

# --- Throttling ---
CONFIRM_RATE_LIMIT = 10  # requests
CONFIRM_RATE_WINDOW = 60  # seconds

# --- Pull confirmation ---
NOT_CONFIRMED_MESSAGE = "Payment not yet confirmed, try again"

# --- Pagination ---
PAYMENTS_PER_PAGE = 20
MAX_PAYMENTS_PER_PAGE = 100
