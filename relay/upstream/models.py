import codecs
from dataclasses import dataclass, field
from typing import Mapping, Optional

import httpx

BODY_METHODS = {"POST", "PUT", "PATCH"}


def normalize_path(path: Optional[str]) -> str:
    """Upstream path from the ``path`` parameter; defaults to the root."""
    if not path:
        return "/"
    return path if path.startswith("/") else f"/{path}"


def charset_of(content_type: str, default: str = "utf-8") -> str:
    for param in content_type.split(";")[1:]:
        name, _, value = param.partition("=")
        if name.strip().lower() == "charset":
            charset = value.strip().strip("\"'")
            try:
                return codecs.lookup(charset).name
            except LookupError:
                return default
    return default


@dataclass(frozen=True)
class ProxiedRequest:
    """One inbound request, already bound to an account."""

    account: str
    method: str = "GET"
    path: str = "/"
    query: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""

    def __post_init__(self):
        object.__setattr__(self, "method", self.method.upper())
        object.__setattr__(self, "path", normalize_path(self.path))

    @property
    def has_body(self) -> bool:
        return self.method in BODY_METHODS


@dataclass(frozen=True)
class UpstreamResponse:
    status_code: int
    headers: httpx.Headers
    content: bytes
    url: str = ""

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "")

    @property
    def charset(self) -> str:
        return charset_of(self.content_type)

    def text(self) -> str:
        """Body decoded with its declared charset; undecodable bytes survive a round trip."""
        return self.content.decode(self.charset, errors="surrogateescape")

    @classmethod
    def from_httpx(cls, response: httpx.Response) -> "UpstreamResponse":
        return cls(
            status_code=response.status_code,
            headers=response.headers,
            content=response.content,
            url=str(response.url),
        )
