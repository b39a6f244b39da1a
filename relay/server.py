import logging
import os
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import Info
from prometheus_fastapi_instrumentator import Instrumentator

from relay import routes
from relay.app_proxy import route as proxy_route
from relay.app_proxy.rewriter import RegexResponseRewriter, ResponseRewriter
from relay.credentials import CredentialStore
from relay.tunnel import TunnelBridge
from relay.upstream import UpstreamForwarder
from relay.vars import (
    HOST,
    OTLP_ENDPOINT,
    OTLP_HEADERS,
    PORT,
    PUBLIC_URL,
    SERVICE_NAME,
    STATIC_DIR,
    raw_accounts_from_env,
)

logger = logging.getLogger("uvicorn.error")


def create_app(
    store: Optional[CredentialStore] = None,
    forwarder: Optional[UpstreamForwarder] = None,
    rewriter: Optional[ResponseRewriter] = None,
    bridge: Optional[TunnelBridge] = None,
    static_dir: Optional[str] = STATIC_DIR,
    public_url: str = PUBLIC_URL,
    metrics: bool = False,
) -> FastAPI:
    """
    Assemble the relay application.

    Every collaborator can be injected; anything left out is built from the
    environment. The credential store is loaded once here and shared by all
    handlers for the lifetime of the app. Metrics register process-wide
    collectors, so only the served app enables them.
    """
    if store is None:
        store = CredentialStore.load(raw_accounts_from_env())
    forwarder = forwarder or UpstreamForwarder()
    rewriter = rewriter or RegexResponseRewriter(upstream_origin=forwarder.origin)
    bridge = bridge or TunnelBridge()

    static_app = None
    if static_dir and os.path.isdir(static_dir):
        static_app = StaticFiles(directory=static_dir, html=True)

    app = FastAPI(title=SERVICE_NAME)
    app.state.store = store
    if metrics:
        Instrumentator().instrument(app).expose(app)
    app.include_router(proxy_route.build_router(store, forwarder, rewriter, bridge, public_url))
    # Registered last: its catch-all hands unmatched paths to the static files
    app.include_router(routes.build_router(store, forwarder, static_app))
    return app


app = create_app(metrics=True)

trace.set_tracer_provider(TracerProvider(resource=Resource.create({"service.name": SERVICE_NAME})))
tracer_provider = trace.get_tracer_provider()
if OTLP_ENDPOINT:
    otlp_exporter = OTLPSpanExporter(
        endpoint=OTLP_ENDPOINT,
        headers=OTLP_HEADERS or None,
    )
    tracer_provider.add_span_processor(BatchSpanProcessor(otlp_exporter))

FastAPIInstrumentor.instrument_app(app)

# Add app_name to the metrics
app_info = Info("fastapi_app_info", "Application Info")
app_info.info({"app_name": SERVICE_NAME})


def main():
    store = app.state.store
    logger.info(
        f"[Relay] Starting {SERVICE_NAME} on {HOST}:{PORT}, "
        f"accounts: {', '.join(store.configured_accounts()) or '<none>'}"
    )
    uvicorn.run(app, host=HOST, port=PORT)


if __name__ == "__main__":
    main()
