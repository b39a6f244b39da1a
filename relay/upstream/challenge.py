"""
Detection of interstitial anti-automation pages returned by the upstream.

A challenge page means the account's clearance cookie is stale. It must be
reported to the caller, never rewritten or passed through as content.
"""

from enum import Enum

from relay.upstream.models import UpstreamResponse

# Only the interstitial itself carries these; pages that merely embed the
# Turnstile widget load challenges.cloudflare.com too and must stay clean.
CHALLENGE_MARKERS = (
    "<title>Just a moment...</title>",
    "<title>Attention Required! | Cloudflare</title>",
    "cf-browser-verification",
    "_cf_chl_opt",
)

INSPECTED_TYPES = ("text/html", "application/xhtml+xml")


class Verdict(str, Enum):
    CLEAN = "clean"
    CHALLENGE_REQUIRED = "challenge_required"


def is_html_content(content_type: str) -> bool:
    media_type = content_type.split(";", 1)[0].strip().lower()
    return media_type in INSPECTED_TYPES


def is_challenge_body(text: str) -> bool:
    return any(marker in text for marker in CHALLENGE_MARKERS)


def classify(envelope: UpstreamResponse) -> Verdict:
    """Classify an upstream response as a normal page or a verification interstitial."""
    if envelope.headers.get("cf-mitigated", "").lower() == "challenge":
        return Verdict.CHALLENGE_REQUIRED
    if not is_html_content(envelope.content_type):
        return Verdict.CLEAN
    if is_challenge_body(envelope.text()):
        return Verdict.CHALLENGE_REQUIRED
    return Verdict.CLEAN
