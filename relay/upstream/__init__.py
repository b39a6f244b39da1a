from .challenge import Verdict, classify
from .forwarder import ForwardError, InvalidTarget, UpstreamForwarder
from .models import ProxiedRequest, UpstreamResponse

__all__ = [
    "ForwardError",
    "InvalidTarget",
    "ProxiedRequest",
    "UpstreamForwarder",
    "UpstreamResponse",
    "Verdict",
    "classify",
]
