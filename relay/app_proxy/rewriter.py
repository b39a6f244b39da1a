"""
Rewrites upstream markup and style sheets so that navigation re-enters the
proxy with the same account bound.

The rewriting is pattern based and works on the raw text; nothing outside a
matched reference is touched. ``ResponseRewriter`` is the seam for swapping in
a parser-based implementation.
"""

import html
import re
from abc import ABC, abstractmethod
from urllib.parse import quote, urlparse

from relay.upstream.models import charset_of
from relay.vars import UPSTREAM_ORIGIN

PROXY_PATH = "/proxy"
MARKER_ID = "relay-account-marker"

HTML_TYPES = ("text/html", "application/xhtml+xml")
CSS_TYPES = ("text/css",)

ACCOUNT_MARKER_TEMPLATE = (
    '<style id="{marker_id}">'
    "body::before{{"
    'content:"Account: {account}";'
    "position:fixed;top:10px;right:10px;"
    "background:rgba(29,155,240,0.8);color:#fff;"
    "padding:4px 8px;border-radius:4px;font-size:12px;"
    "z-index:2147483647;pointer-events:none;"
    "font-family:-apple-system,BlinkMacSystemFont,'Segoe UI',Roboto,sans-serif;"
    "}}"
    "</style>"
)

# Root-relative: a single leading slash, never `//host` (protocol-relative)
_ROOT_ATTR = re.compile(r"""(?P<prefix>\b(?:href|src|action)\s*=\s*)(?P<q>["'])(?P<path>/(?!/|proxy\?account=)[^"'<>]*)(?P=q)""", re.I)
_ROOT_CSS_URL = re.compile(
    r"""(?P<prefix>url\(\s*)(?P<q>["']?)(?P<path>/(?!/|proxy\?account=)[^"')\s]*)(?P=q)(?P<suffix>\s*\))""", re.I
)
_HEAD_OPEN = re.compile(r"<head(?:\s[^>]*)?>", re.I)


def media_type_of(content_type: str) -> str:
    return content_type.split(";", 1)[0].strip().lower()


def proxied_url(proxy_origin: str, account: str, path: str) -> str:
    """``{proxy_origin}/proxy?account=..&path=..`` for an upstream path."""
    return (
        f"{proxy_origin}{PROXY_PATH}?account={quote(account, safe='')}"
        f"&path={quote(path, safe='/')}"
    )


def account_marker(account: str) -> str:
    css_safe = account.replace("\\", "\\\\").replace('"', '\\"')
    return ACCOUNT_MARKER_TEMPLATE.format(marker_id=MARKER_ID, account=html.escape(css_safe, quote=False))


class ResponseRewriter(ABC):
    @abstractmethod
    def can_rewrite(self, content_type: str) -> bool:
        """Whether bodies of this content type are subject to rewriting."""

    @abstractmethod
    def rewrite(self, body: bytes, content_type: str, account: str, proxy_origin: str) -> bytes:
        """Return ``body`` with upstream references routed through the proxy."""


class RegexResponseRewriter(ResponseRewriter):
    def __init__(self, upstream_origin: str = UPSTREAM_ORIGIN):
        self.upstream_origin = upstream_origin.rstrip("/")
        host = re.escape(urlparse(self.upstream_origin).netloc)
        self._absolute_attr = re.compile(
            r"""(?P<prefix>\b(?:href|src)\s*=\s*)(?P<q>["'])(?:https?:)?//"""
            + host
            + r"""(?P<path>(?:[/?#][^"'<>]*)?)(?P=q)""",
            re.I,
        )

    def can_rewrite(self, content_type: str) -> bool:
        return media_type_of(content_type) in HTML_TYPES + CSS_TYPES

    def rewrite(self, body: bytes, content_type: str, account: str, proxy_origin: str) -> bytes:
        media_type = media_type_of(content_type)
        if media_type not in HTML_TYPES + CSS_TYPES or not body:
            return body

        charset = charset_of(content_type)
        text = body.decode(charset, errors="surrogateescape")
        proxy_origin = proxy_origin.rstrip("/")

        if media_type in HTML_TYPES:
            text = self.rewrite_root_attributes(text, account, proxy_origin)
            text = self.rewrite_css_urls(text, account, proxy_origin)
            text = self.rewrite_absolute_attributes(text, account, proxy_origin)
            text = self.inject_account_marker(text, account)
        else:
            text = self.rewrite_css_urls(text, account, proxy_origin)

        return text.encode(charset, errors="surrogateescape")

    def rewrite_root_attributes(self, text: str, account: str, proxy_origin: str) -> str:
        def _sub(m):
            url = proxied_url(proxy_origin, account, html.unescape(m["path"]))
            return f"{m['prefix']}{m['q']}{url}{m['q']}"

        return _ROOT_ATTR.sub(_sub, text)

    def rewrite_css_urls(self, text: str, account: str, proxy_origin: str) -> str:
        def _sub(m):
            url = proxied_url(proxy_origin, account, m["path"])
            return f"{m['prefix']}{m['q']}{url}{m['q']}{m['suffix']}"

        return _ROOT_CSS_URL.sub(_sub, text)

    def rewrite_absolute_attributes(self, text: str, account: str, proxy_origin: str) -> str:
        def _sub(m):
            path = html.unescape(m["path"])
            if not path.startswith("/"):
                path = "/" + path
            url = proxied_url(proxy_origin, account, path)
            return f"{m['prefix']}{m['q']}{url}{m['q']}"

        return self._absolute_attr.sub(_sub, text)

    def inject_account_marker(self, text: str, account: str) -> str:
        if f'id="{MARKER_ID}"' in text:
            return text
        m = _HEAD_OPEN.search(text)
        if not m:
            return text
        return text[: m.end()] + account_marker(account) + text[m.end():]
