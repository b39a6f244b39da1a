import hashlib
from typing import Optional


def token_fingerprint(token: Optional[str]) -> str:
    """Provide a stable, low-leak cookie identifier for logs."""
    if not token:
        return "<empty>"
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()[:12]
    return f"len={len(token)} sha256={digest}"


def cookie_names(cookie: str) -> list[str]:
    """Names of the cookies in a ``Cookie`` header value, in order."""
    names = []
    for part in cookie.split(";"):
        name, sep, _ = part.partition("=")
        name = name.strip()
        if sep and name:
            names.append(name)
    return names
