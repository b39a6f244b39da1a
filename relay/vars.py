import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "cookie-relay")
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8000"))

# Upstream and public addressing
UPSTREAM_ORIGIN = os.environ.get("UPSTREAM_ORIGIN", "https://grok.com").rstrip("/")
PUBLIC_URL = os.environ.get("PUBLIC_URL", "").rstrip("/")  # Public-facing URL for rewrites

PROXY_TIMEOUT = float(os.environ.get("PROXY_TIMEOUT", "30"))
MAX_REDIRECTS = int(os.environ.get("MAX_REDIRECTS", "10"))
DISCONNECT_POLL_INTERVAL = float(os.environ.get("DISCONNECT_POLL_INTERVAL", "0.5"))
TUNNEL_CLOSE_TIMEOUT = float(os.environ.get("TUNNEL_CLOSE_TIMEOUT", "5"))
DEBUG_BODY_LIMIT = int(os.environ.get("DEBUG_BODY_LIMIT", "2000"))

STATIC_DIR = os.environ.get("STATIC_DIR", "public")

# Accounts
ACCOUNT_IDS = [
    a.strip() for a in os.environ.get("ACCOUNT_IDS", "account1,account2,account3").split(",") if a.strip()
]
DEFAULT_ACCOUNT = os.environ.get("DEFAULT_ACCOUNT", ACCOUNT_IDS[0] if ACCOUNT_IDS else "account1")
SESSION_COOKIE_NAMES = [
    c.strip() for c in os.environ.get("SESSION_COOKIE_NAMES", "sso,sso-rw").split(",") if c.strip()
]
CLEARANCE_COOKIE_NAMES = [
    c.strip() for c in os.environ.get("CLEARANCE_COOKIE_NAMES", "cf_clearance").split(",") if c.strip()
]

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")


def account_env_prefix(account: str) -> str:
    """`account1` -> `ACCOUNT1`, `team-a` -> `TEAM_A`."""
    return "".join(ch if ch.isalnum() else "_" for ch in account).upper()


def raw_accounts_from_env(environ=None, account_ids=None) -> dict[str, dict]:
    """
    Collect the raw per-account settings from the environment.

    For every configured account id the cookie string is read from
    ``{ID}_COOKIES`` and the client identity from ``{ID}_USER_AGENT``.
    Values are returned as-is; validation belongs to the credential store.
    """
    env = os.environ if environ is None else environ
    ids = ACCOUNT_IDS if account_ids is None else account_ids
    raw = {}
    for account in ids:
        prefix = account_env_prefix(account)
        raw[account] = {
            "cookies": env.get(f"{prefix}_COOKIES", ""),
            "user_agent": env.get(f"{prefix}_USER_AGENT") or None,
        }
    return raw
