"""
Session client configuration. Values from the marketplace API contract.
No secrets in this file; credentials only ever live in the credential store.
"""
import os

# Marketplace API (EzyFix backend); every gateway path is joined onto this
API_BASE_URL = os.environ.get("SESSION_API_BASE_URL", "https://ezyfix.up.railway.app").rstrip("/")

# Auth endpoints (renewal is called directly by the token manager, never through the gateway)
LOGIN_PATH = "/api/v1/auth/login"
LOGOUT_PATH = "/api/v1/auth/logout"
REFRESH_TOKEN_PATH = "/api/v1/auth/refresh-token"

# Per-request timeout (seconds) unless a call overrides it
REQUEST_TIMEOUT = float(os.environ.get("SESSION_REQUEST_TIMEOUT", "10"))

# Treat the access token as expired this many seconds before its exp claim
REFRESH_BUFFER_SECONDS = int(os.environ.get("SESSION_REFRESH_BUFFER_SECONDS", "60"))

# Proactive refresh timer period (seconds). 5 minutes.
PROACTIVE_REFRESH_INTERVAL = float(os.environ.get("SESSION_PROACTIVE_REFRESH_INTERVAL", "300"))

# Session-expired cascade runs at most once per grace window (seconds)
SESSION_EXPIRED_GRACE_SECONDS = float(os.environ.get("SESSION_EXPIRED_GRACE_SECONDS", "2.0"))

# Renewal tokens that carry no exp claim (opaque strings) are assumed valid for this long
RENEWAL_FALLBACK_TTL_SECONDS = int(os.environ.get("SESSION_RENEWAL_FALLBACK_TTL", str(365 * 24 * 3600)))

# Durable credential store. SQLite file by default; tests use sqlite:///:memory:
DATABASE_URL = os.environ.get("SESSION_DATABASE_URL", "sqlite:///./session_store.db")

DEFAULT_HEADERS = {
    "Content-Type": "application/json",
    "Accept": "application/json",
}


class StorageKeys:
    ACCESS_TOKEN = "access_token"
    REFRESH_TOKEN = "refresh_token"
    USER_DATA = "user_data"
    USER_TYPE = "user_type"  # 'customer' or 'technician'


# Everything a logout must remove together
SESSION_KEYS = (
    StorageKeys.ACCESS_TOKEN,
    StorageKeys.REFRESH_TOKEN,
    StorageKeys.USER_DATA,
    StorageKeys.USER_TYPE,
)

USER_TYPE_CUSTOMER = "customer"
USER_TYPE_TECHNICIAN = "technician"
USER_TYPES = {USER_TYPE_CUSTOMER, USER_TYPE_TECHNICIAN}
