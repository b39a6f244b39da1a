from .bridge import (
    ClientWebSocket,
    TunnelBridge,
    TunnelClosed,
    TunnelSocket,
    UpstreamWebSocket,
    tunnel_url,
)

__all__ = [
    "ClientWebSocket",
    "TunnelBridge",
    "TunnelClosed",
    "TunnelSocket",
    "UpstreamWebSocket",
    "tunnel_url",
]
