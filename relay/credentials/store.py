"""
Credential store: validated cookie/identity pairs per account.

The store is built once from raw configuration and never mutated afterwards,
so concurrent request handlers can read it without locking.
"""

import logging
import re
from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from relay.utils import cookie_names, token_fingerprint
from relay.vars import CLEARANCE_COOKIE_NAMES, SESSION_COOKIE_NAMES

logger = logging.getLogger("uvicorn.error")

DEFAULT_USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
)

# Pasted env lines such as `export ACCOUNT1_COOKIES="...` end up inside the value
_CONFIG_TOKEN = re.compile(r"(?:\bexport\s+)?\b[A-Z][A-Z0-9_]*_(?:COOKIES|USER_AGENT)\s*=\s*")
_WRAPPING_QUOTES = "\"'"


class AccountNotConfigured(LookupError):
    """Raised when a request names an account without a usable credential."""

    def __init__(self, account: Optional[str]):
        self.account = account
        super().__init__(f"Account {account} not configured or missing cookies")


@dataclass(frozen=True)
class Credential:
    account: str
    cookie: str
    user_agent: str


def _quotes_pair_up(text: str, quote: str) -> bool:
    """Every ``quote`` in ``text`` opens after ``=`` or ``;`` and closes before ``;``."""
    opened = False
    for index, char in enumerate(text):
        if char != quote:
            continue
        if not opened:
            before = text[:index].rstrip()
            if before and before[-1] not in "=;":
                return False
        else:
            after = text[index + 1 :].lstrip()
            if after and after[0] != ";":
                return False
        opened = not opened
    return not opened


def _strip_wrapping_quotes(value: str) -> str:
    # '"a=1"; b="2"' is two quoted values, not one wrapped header
    while (
        len(value) >= 2
        and value[0] in _WRAPPING_QUOTES
        and value[-1] == value[0]
        and _quotes_pair_up(value[1:-1], value[0])
    ):
        value = value[1:-1].strip()
    return value


def _normalize_once(value: str) -> str:
    value = value.replace("\r", "").replace("\n", "")
    value = _strip_wrapping_quotes(_CONFIG_TOKEN.sub("", value).strip())
    segments = [segment.strip() for segment in value.split(";")]
    return "; ".join(segment for segment in segments if segment)


def normalize_cookie(raw: Optional[str]) -> str:
    """
    Clean up a cookie header value as pasted by an operator.

    Line breaks are removed, stray configuration tokens and wrapping quotes are
    stripped and every ``name=value`` segment is trimmed. Quotes that open the
    first cookie value and close the last one are left alone. Cleaning repeats
    until nothing changes, so normalizing an already-normalized value returns it
    unchanged.
    """
    if not raw:
        return ""
    value, previous = raw, None
    while value != previous:
        previous, value = value, _normalize_once(value)
    return value


def has_required_cookies(
    cookie: str,
    session_names: Iterable[str] = SESSION_COOKIE_NAMES,
    clearance_names: Iterable[str] = CLEARANCE_COOKIE_NAMES,
) -> bool:
    """A usable cookie jar holds at least one session and one clearance cookie."""
    names = set(cookie_names(cookie))
    return bool(names & set(session_names)) and bool(names & set(clearance_names))


def build_credential(account: str, raw: Mapping, slot: int = 0) -> Optional[Credential]:
    """Validate one raw account entry; returns ``None`` when it is not usable."""
    cookie = normalize_cookie(raw.get("cookies"))
    if not cookie:
        logger.warning(f"[Credentials] {account}: no cookies configured")
        return None
    if not has_required_cookies(cookie):
        logger.warning(
            f"[Credentials] {account}: cookies rejected, missing session or clearance cookie "
            f"(names={cookie_names(cookie)}, {token_fingerprint(cookie)})"
        )
        return None
    user_agent = (raw.get("user_agent") or "").strip()
    if not user_agent:
        user_agent = DEFAULT_USER_AGENTS[slot % len(DEFAULT_USER_AGENTS)]
    return Credential(account=account, cookie=cookie, user_agent=user_agent)


class CredentialStore:
    def __init__(self, credentials: Mapping[str, Optional[Credential]]):
        self._credentials = MappingProxyType(dict(credentials))

    @classmethod
    def load(cls, raw_accounts: Mapping[str, Mapping]) -> "CredentialStore":
        """Build a store from ``{account: {"cookies": ..., "user_agent": ...}}``."""
        credentials = {}
        for slot, (account, raw) in enumerate(raw_accounts.items()):
            credentials[account] = build_credential(account, raw or {}, slot)
        store = cls(credentials)
        logger.info(
            f"[Credentials] Loaded {len(credentials)} account(s), configured: "
            f"{', '.join(store.configured_accounts()) or '<none>'}"
        )
        return store

    def accounts(self) -> list[str]:
        return list(self._credentials)

    def configured_accounts(self) -> list[str]:
        return [key for key, cred in self._credentials.items() if cred is not None]

    def is_configured(self, account: Optional[str]) -> bool:
        return self.get(account) is not None

    def get(self, account: Optional[str]) -> Optional[Credential]:
        if account is None:
            return None
        return self._credentials.get(account)

    def resolve(self, account: Optional[str]) -> Credential:
        credential = self.get(account)
        if credential is None:
            raise AccountNotConfigured(account)
        return credential
