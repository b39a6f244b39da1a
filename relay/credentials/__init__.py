from .store import (
    AccountNotConfigured,
    Credential,
    CredentialStore,
    has_required_cookies,
    normalize_cookie,
)

__all__ = [
    "AccountNotConfigured",
    "Credential",
    "CredentialStore",
    "has_required_cookies",
    "normalize_cookie",
]
