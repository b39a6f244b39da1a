import asyncio
import logging
import re
from contextlib import suppress
from typing import Awaitable, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Request, WebSocket
from fastapi.responses import Response
from opentelemetry import trace
from starlette.requests import HTTPConnection
from websockets.exceptions import WebSocketException

from relay.app_proxy.rewriter import ResponseRewriter
from relay.credentials import AccountNotConfigured, CredentialStore
from relay.models import ErrorResponse, utc_timestamp
from relay.responses import CORS_HEADERS, json_response
from relay.tunnel import ClientWebSocket, TunnelBridge, tunnel_url
from relay.tunnel.bridge import INTERNAL_ERROR, POLICY_VIOLATION
from relay.upstream import ForwardError, InvalidTarget, ProxiedRequest, UpstreamForwarder, UpstreamResponse, Verdict, classify
from relay.upstream.models import normalize_path
from relay.utils.exception_logging import format_exception_message
from relay.utils.traced_requests import traced_request
from relay.vars import DEFAULT_ACCOUNT, DISCONNECT_POLL_INTERVAL, PUBLIC_URL

tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]
CONTROL_PARAMS = ("account", "path")

# Upstream response headers worth keeping; length and encoding change with the body
KEPT_RESPONSE_HEADERS = (
    "content-type",
    "cache-control",
    "expires",
    "last-modified",
    "etag",
)

CLIENT_CLOSED_REQUEST = 499

_COOKIE_DOMAIN = re.compile(r";\s*domain=[^;]*", re.I)


def proxy_origin(request: HTTPConnection, public_url: str = PUBLIC_URL) -> str:
    """Origin under which the client reaches the proxy."""
    if public_url:
        return public_url.rstrip("/")
    host = request.headers.get("host") or (request.client.host if request.client else "localhost")
    return f"{request.url.scheme}://{host}"


def passthrough_query(request: HTTPConnection) -> str:
    """Query parameters meant for the upstream (everything but account/path)."""
    return urlencode(
        [(k, v) for k, v in request.query_params.multi_items() if k not in CONTROL_PARAMS]
    )


def strip_cookie_domain(set_cookie: str) -> str:
    """Drop the Domain attribute so the browser files the cookie under the proxy host."""
    return _COOKIE_DOMAIN.sub("", set_cookie)


def build_downstream_response(
    envelope: UpstreamResponse,
    account: str,
    origin: str,
    rewriter: ResponseRewriter,
) -> Response:
    """
    Turn a clean upstream response into the client response.
    Only call this after the challenge check has passed.
    """
    content = envelope.content
    if rewriter.can_rewrite(envelope.content_type):
        content = rewriter.rewrite(content, envelope.content_type, account, origin)

    response = Response(content=content, status_code=envelope.status_code, headers=dict(CORS_HEADERS))
    for name in KEPT_RESPONSE_HEADERS:
        value = envelope.headers.get(name)
        if value:
            response.headers[name] = value
    for set_cookie in envelope.headers.get_list("set-cookie"):
        response.headers.append("set-cookie", strip_cookie_domain(set_cookie))
    return response


async def forward_unless_disconnected(
    request: Request, upstream_call: Awaitable[UpstreamResponse]
) -> Optional[UpstreamResponse]:
    """
    Await the upstream call, abandoning it if the client goes away first.
    Returns ``None`` when the client disconnected.
    """
    task = asyncio.ensure_future(upstream_call)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=DISCONNECT_POLL_INTERVAL)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info(f"[Proxy] Client disconnected, abandoning upstream request for {request.url.path}")
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
                return None
    finally:
        if not task.done():
            task.cancel()


async def forward_to_upstream(
    request: Request,
    store: CredentialStore,
    forwarder: UpstreamForwarder,
    rewriter: ResponseRewriter,
    public_url: str = PUBLIC_URL,
) -> Response:
    """
    Forward an inbound ``/proxy`` request to the upstream as the selected account:
    - Account resolution (400 when unknown or unconfigured)
    - Transport failures reported as 500, never retried
    - Challenge pages reported as 403 and never rewritten
    - Markup and style sheets rewritten to stay on the proxy
    """
    account = request.query_params.get("account") or DEFAULT_ACCOUNT
    try:
        credential = store.resolve(account)
    except AccountNotConfigured as e:
        logger.warning(f"[Proxy] {e}")
        return json_response(ErrorResponse(error=str(e), account=account), status_code=400)

    context = ProxiedRequest(
        account=account,
        method=request.method,
        path=normalize_path(request.query_params.get("path")),
        query=passthrough_query(request),
        headers=dict(request.headers),
        body=await request.body(),
    )

    with traced_request(
        tracer,
        operation="proxy_request",
        account=account,
        start_message=f"[Proxy] {context.method} {context.path} as {account}",
        extra_attrs={"proxy.path": context.path, "proxy.method": context.method},
    ) as span:
        try:
            envelope = await forward_unless_disconnected(request, forwarder.forward(context, credential))
        except InvalidTarget as e:
            span.set_attribute("proxy.error", type(e.cause).__name__)
            return json_response(
                ErrorResponse(
                    error="Invalid upstream path",
                    details=format_exception_message(e.cause),
                    account=account,
                ),
                status_code=400,
            )
        except ForwardError as e:
            span.set_attribute("proxy.error", type(e.cause).__name__)
            return json_response(
                ErrorResponse(
                    error="Proxy request failed",
                    details=format_exception_message(e.cause),
                    account=account,
                    timestamp=utc_timestamp(),
                ),
                status_code=500,
            )

        if envelope is None:
            span.set_attribute("proxy.client_disconnected", True)
            return Response(status_code=CLIENT_CLOSED_REQUEST)

        span.set_attribute("proxy.status_code", envelope.status_code)
        if classify(envelope) is Verdict.CHALLENGE_REQUIRED:
            span.set_attribute("proxy.challenge", True)
            logger.warning(f"[Proxy] Verification challenge for account {account} on {context.path}")
            return json_response(
                ErrorResponse(
                    error="Upstream verification challenge",
                    message=(
                        f"The upstream answered with a verification page for account {account}. "
                        "Refresh its cf_clearance and session cookies, then retry."
                    ),
                    account=account,
                    timestamp=utc_timestamp(),
                ),
                status_code=403,
            )

        return build_downstream_response(envelope, account, proxy_origin(request, public_url), rewriter)


async def tunnel_to_upstream(
    websocket: WebSocket,
    store: CredentialStore,
    forwarder: UpstreamForwarder,
    bridge: TunnelBridge,
) -> None:
    """Relay a WebSocket on ``/proxy`` to the upstream as the selected account."""
    account = websocket.query_params.get("account") or DEFAULT_ACCOUNT
    credential = store.get(account)
    if credential is None:
        logger.warning(f"[Tunnel] Rejecting upgrade, account {account} not configured or missing cookies")
        await websocket.close(code=POLICY_VIOLATION, reason=f"Account {account} not configured")
        return

    path = normalize_path(websocket.query_params.get("path"))
    url = tunnel_url(forwarder.origin, path, passthrough_query(websocket))
    subprotocols = [
        p.strip() for p in websocket.headers.get("sec-websocket-protocol", "").split(",") if p.strip()
    ]

    with tracer.start_as_current_span("proxy_tunnel") as span:
        span.set_attribute("relay.account", account)
        span.set_attribute("proxy.target_url", url)
        try:
            upstream = await bridge.open_upstream(url, credential, forwarder.origin, subprotocols)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            span.set_attribute("proxy.error", type(e).__name__)
            logger.error(f"[Tunnel] Upstream handshake to {url} failed: {format_exception_message(e)}")
            await websocket.close(code=INTERNAL_ERROR, reason="Upstream unavailable")
            return

        logger.info(f"[Tunnel] {account} connected to {url}")
        try:
            await websocket.accept(subprotocol=upstream.subprotocol)
        except Exception:
            await upstream.close(INTERNAL_ERROR)
            raise
        await bridge.run(ClientWebSocket(websocket), upstream, label=f"[{account}]")


def build_router(
    store: CredentialStore,
    forwarder: UpstreamForwarder,
    rewriter: ResponseRewriter,
    bridge: TunnelBridge,
    public_url: str = PUBLIC_URL,
) -> APIRouter:
    router = APIRouter()

    @router.api_route("/proxy", methods=PROXY_METHODS)
    async def proxy_http(request: Request):
        """Proxy a request to the upstream as ``?account=``, at ``?path=``."""
        return await forward_to_upstream(request, store, forwarder, rewriter, public_url)

    @router.websocket("/proxy")
    async def proxy_websocket(websocket: WebSocket):
        await tunnel_to_upstream(websocket, store, forwarder, bridge)

    return router
