"""
Outbound side of the proxy: builds a browser-like request toward the fixed
upstream origin with an account's credential attached.
"""

import logging
from functools import partial
from typing import Dict, Mapping, Optional
from urllib.parse import urlparse

import httpx
from opentelemetry import trace

from relay.credentials import Credential
from relay.upstream.models import ProxiedRequest, UpstreamResponse
from relay.utils import token_fingerprint
from relay.utils.exception_logging import format_exception_message, log_exception_with_details
from relay.vars import MAX_REDIRECTS, PROXY_TIMEOUT, UPSTREAM_ORIGIN

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

DEFAULT_HEADERS = {
    "accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "accept-language": "en-US,en;q=0.9",
    "accept-encoding": "gzip, deflate, br",
    "connection": "keep-alive",
    "cache-control": "no-cache",
    "pragma": "no-cache",
    "upgrade-insecure-requests": "1",
    "sec-ch-ua": '"Not_A Brand";v="8", "Chromium";v="120", "Google Chrome";v="120"',
    "sec-ch-ua-mobile": "?0",
    "sec-fetch-dest": "document",
    "sec-fetch-mode": "navigate",
    "sec-fetch-site": "same-origin",
}

# Negotiation headers a browser sends that may replace the defaults
PASSTHROUGH_HEADERS = ("accept", "accept-language")


class ForwardError(Exception):
    """Transport-level failure talking to the upstream. Never retried."""

    def __init__(self, url: str, cause: BaseException):
        self.url = url
        self.cause = cause
        super().__init__(f"Upstream request to {url} failed: {format_exception_message(cause)}")


class InvalidTarget(ForwardError):
    """The requested path or query does not form a valid upstream URL."""


def client_platform(user_agent: str) -> str:
    """Value for ``sec-ch-ua-platform`` matching the user agent."""
    if "Windows" in user_agent:
        return '"Windows"'
    if "Mac OS X" in user_agent or "Macintosh" in user_agent:
        return '"macOS"'
    if "Android" in user_agent:
        return '"Android"'
    return '"Linux"'


def build_upstream_headers(
    credential: Credential,
    origin: str,
    inbound_headers: Optional[Mapping[str, str]] = None,
    body: Optional[bytes] = None,
) -> Dict[str, str]:
    """
    Headers for the outbound request.

    The credential's cookie and user agent are always used. A body, when
    given, determines content-length; content-type is copied from the
    inbound request rather than guessed.
    """
    inbound = {k.lower(): v for k, v in (inbound_headers or {}).items()}
    headers = dict(DEFAULT_HEADERS)
    for name in PASSTHROUGH_HEADERS:
        if inbound.get(name):
            headers[name] = inbound[name]

    headers["origin"] = origin
    headers["referer"] = f"{origin}/"
    headers["sec-ch-ua-platform"] = client_platform(credential.user_agent)
    headers["user-agent"] = credential.user_agent
    headers["cookie"] = credential.cookie

    if body is not None:
        if inbound.get("content-type"):
            headers["content-type"] = inbound["content-type"]
        headers["content-length"] = str(len(body))
    return headers


class UpstreamForwarder:
    def __init__(
        self,
        origin: str = UPSTREAM_ORIGIN,
        timeout: float = PROXY_TIMEOUT,
        max_redirects: int = MAX_REDIRECTS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.origin = origin.rstrip("/")
        self.timeout = timeout
        self.max_redirects = max_redirects
        self._transport = transport
        self._host = urlparse(self.origin).netloc

    def target_url(self, path: str, query: str = "") -> str:
        url = f"{self.origin}{path}"
        if query:
            url += ("&" if "?" in path else "?") + query
        return url

    async def _attach_credentials(self, credential: Credential, request: httpx.Request) -> None:
        # httpx rebuilds the cookie header from its own jar on every redirect hop
        if request.url.netloc.decode("ascii") == self._host:
            request.headers["cookie"] = credential.cookie
        else:
            request.headers.pop("cookie", None)

    async def forward(
        self,
        context: ProxiedRequest,
        credential: Credential,
        follow_redirects: bool = True,
    ) -> UpstreamResponse:
        """Send ``context`` upstream as ``credential`` and return the final response."""
        url = self.target_url(context.path, context.query)
        body = context.body if context.has_body else None
        headers = build_upstream_headers(credential, self.origin, context.headers, body)

        with tracer.start_as_current_span("upstream_request") as span:
            span.set_attribute("proxy.target_url", url)
            span.set_attribute("proxy.method", context.method)
            span.set_attribute("relay.account", credential.account)
            logger.debug(
                f"[Proxy] {context.method} {url} as {credential.account} "
                f"(cookie {token_fingerprint(credential.cookie)})"
            )
            try:
                async with httpx.AsyncClient(
                    timeout=httpx.Timeout(self.timeout),
                    follow_redirects=follow_redirects,
                    max_redirects=self.max_redirects,
                    transport=self._transport,
                    event_hooks={"request": [partial(self._attach_credentials, credential)]},
                ) as client:
                    response = await client.request(
                        method=context.method,
                        url=url,
                        headers=headers,
                        content=body,
                    )
            except httpx.RequestError as e:
                span.set_attribute("proxy.error", type(e).__name__)
                log_exception_with_details(logger, f"[Proxy] Upstream request to {url} failed:", e)
                raise ForwardError(url, e) from e
            except httpx.InvalidURL as e:
                span.set_attribute("proxy.error", type(e).__name__)
                logger.warning(f"[Proxy] Rejected upstream URL {url!r}: {format_exception_message(e)}")
                raise InvalidTarget(url, e) from e

            span.set_attribute("proxy.status_code", response.status_code)
            if response.history:
                span.set_attribute("proxy.redirects", len(response.history))
            return UpstreamResponse.from_httpx(response)

    async def probe(self, credential: Credential, path: str = "/") -> UpstreamResponse:
        """Single GET without following redirects, used by the diagnostic endpoints."""
        return await self.forward(
            ProxiedRequest(account=credential.account, path=path),
            credential,
            follow_redirects=False,
        )
