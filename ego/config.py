"""
Ego configuration. Values come from the environment; no secrets in this file.
Provider credentials are read per provider; a provider without a client id is disabled.
"""
import os

# Issuer claim on every session token
ISSUER_NAME = "ego"

# Public base URL of this service, used to build provider callback URIs
PUBLIC_URL = os.environ.get("EGO_PUBLIC_URL", "http://127.0.0.1:8081").rstrip("/")

# SQLite by default; any SQLAlchemy URL works
DATABASE_URL = os.environ.get("EGO_DATABASE_URL", "sqlite:///./ego.db")

# Session token lifetime (seconds). Fixed at issuance; refresh keeps the old expiry.
JWT_DURATION_SECONDS = int(os.environ.get("EGO_JWT_DURATION_SECONDS", "86400"))

# API key lifetime (days)
API_KEY_DURATION_DAYS = int(os.environ.get("EGO_API_KEY_DURATION_DAYS", "365"))

# Longest API key string accepted by revoke
MAX_TOKEN_LENGTH = 2048

# RSA private key PEM used to sign tokens. Generated and saved here if missing.
SIGNING_KEY_PATH = os.environ.get("EGO_SIGNING_KEY_PATH", ".ego_signing_key.pem")
# Optional previous key: still verifies old tokens, never signs new ones.
SIGNING_KEY_PREVIOUS_PATH = os.environ.get("EGO_SIGNING_KEY_PREVIOUS_PATH", "").strip() or None

# Outbound identity provider calls
PROVIDER_TIMEOUT_SECONDS = float(os.environ.get("EGO_PROVIDER_TIMEOUT_SECONDS", "10"))
PROVIDER_RETRIES = int(os.environ.get("EGO_PROVIDER_RETRIES", "2"))

# Pending SSO flows and one-time login sessions expire after this many seconds
SSO_FLOW_TTL_SECONDS = int(os.environ.get("EGO_SSO_FLOW_TTL_SECONDS", "600"))
SESSION_COOKIE_NAME = "ego_session"

# Status given to users created on their first SSO login
DEFAULT_USER_STATUS = os.environ.get("EGO_DEFAULT_USER_STATUS", "APPROVED").upper()

# Rate limiting: per client IP, per minute
RATE_LIMIT_CHECK_PER_MINUTE = int(os.environ.get("EGO_RATE_LIMIT_CHECK_PER_MINUTE", "120"))
RATE_LIMIT_TOKEN_PER_MINUTE = int(os.environ.get("EGO_RATE_LIMIT_TOKEN_PER_MINUTE", "60"))


def provider_credentials(provider: str) -> tuple[str | None, str | None]:
    """Return (client_id, client_secret) for a provider tag such as GITHUB."""
    prefix = f"EGO_{provider.upper()}"
    client_id = os.environ.get(f"{prefix}_CLIENT_ID") or None
    client_secret = os.environ.get(f"{prefix}_CLIENT_SECRET") or None
    return client_id, client_secret
