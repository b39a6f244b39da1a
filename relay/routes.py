import logging
import os
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse, RedirectResponse, Response
from fastapi.staticfiles import StaticFiles
from opentelemetry import trace

from relay.credentials import CredentialStore
from relay.models import (
    AccountsResponse,
    AccountStatus,
    ConnectivityResult,
    DebugDump,
    ErrorResponse,
    HealthResponse,
)
from relay.responses import CORS_HEADERS, json_response
from relay.upstream import ForwardError, UpstreamForwarder, UpstreamResponse, Verdict, classify
from relay.utils.exception_logging import format_exception_message
from relay.vars import DEBUG_BODY_LIMIT

router_logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)


def connectivity_result(envelope: UpstreamResponse) -> ConnectivityResult:
    """Interpret a probe of the upstream root."""
    status = envelope.status_code
    location = envelope.headers.get("location")
    if classify(envelope) is Verdict.CHALLENGE_REQUIRED:
        return ConnectivityResult(
            success=False,
            message="Verification challenge page detected, refresh the cf_clearance cookie",
        )
    if status == 200:
        return ConnectivityResult(success=True, message="Connection successful")
    if status in (401, 403):
        return ConnectivityResult(
            success=False,
            message=f"Authentication failed (HTTP {status}), session cookies may be expired",
        )
    if 300 <= status < 400:
        return ConnectivityResult(success=False, message=f"Redirected (HTTP {status})", location=location)
    return ConnectivityResult(success=False, message=f"Unexpected upstream status HTTP {status}")


async def fall_through(request: Request, static_app: Optional[StaticFiles]) -> Response:
    """Hand the request to the static asset collaborator."""
    if static_app is None:
        return PlainTextResponse("Not Found", status_code=404)
    path = os.path.normpath(os.path.join(*request.url.path.split("/")))
    return await static_app.get_response(path, request.scope)


def build_router(
    store: CredentialStore,
    forwarder: UpstreamForwarder,
    static_app: Optional[StaticFiles] = None,
) -> APIRouter:
    router = APIRouter()

    @router.options("/{rest:path}")
    async def cors_preflight(rest: str):
        return Response(status_code=200, headers=dict(CORS_HEADERS))

    @router.get("/api/accounts")
    async def list_accounts():
        return json_response(AccountsResponse(accounts=store.configured_accounts()))

    @router.get("/api/health")
    async def health():
        return json_response(
            HealthResponse(
                accounts={
                    account: AccountStatus(configured=store.is_configured(account))
                    for account in store.accounts()
                }
            )
        )

    @router.get("/api/test/{account_id}")
    async def test_account(account_id: str):
        credential = store.get(account_id)
        if credential is None:
            return json_response(
                ConnectivityResult(
                    success=False, message=f"Account {account_id} not configured or missing cookies"
                ),
                status_code=400,
            )
        with tracer.start_as_current_span("probe_account") as span:
            span.set_attribute("relay.account", account_id)
            try:
                envelope = await forwarder.probe(credential)
            except ForwardError as e:
                return json_response(
                    ConnectivityResult(
                        success=False, message=f"Connection failed: {format_exception_message(e.cause)}"
                    )
                )
            result = connectivity_result(envelope)
            span.set_attribute("probe.success", result.success)
        router_logger.info(f"[Probe] {account_id}: {result.message}")
        return json_response(result)

    @router.get("/api/debug/{account_id}")
    async def debug_account(account_id: str):
        credential = store.get(account_id)
        if credential is None:
            return json_response(
                ErrorResponse(error=f"Account {account_id} not configured or missing cookies", account=account_id),
                status_code=400,
            )
        dump = DebugDump(account=account_id, url=forwarder.target_url("/"))
        try:
            envelope = await forwarder.probe(credential)
        except ForwardError as e:
            dump.error = format_exception_message(e.cause)
            return json_response(dump)
        dump.status = envelope.status_code
        dump.headers = dict(envelope.headers.items())
        dump.body = envelope.content.decode(envelope.charset, errors="replace")[:DEBUG_BODY_LIMIT]
        dump.challenge = classify(envelope) is Verdict.CHALLENGE_REQUIRED
        return json_response(dump)

    @router.api_route("/api/{rest:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
    async def unknown_api(rest: str):
        return json_response(ErrorResponse(error="API endpoint not found"), status_code=404)

    @router.get("/account/{account_id}")
    async def open_account(account_id: str, request: Request):
        if store.is_configured(account_id):
            return RedirectResponse(url=f"/proxy?account={quote(account_id, safe='')}&path=/", status_code=302)
        return await fall_through(request, static_app)

    @router.api_route("/{rest:path}", methods=["GET", "HEAD"])
    async def static_files(rest: str, request: Request):
        return await fall_through(request, static_app)

    return router
