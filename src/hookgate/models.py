"""Live request and response types owned by the surrounding gateway."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class LiveRequest:
    """An in-flight HTTP request as the gateway holds it.

    Attributes:
        method: HTTP method
        url: Path and query relative to the API (listen path stripped)
        headers: Request headers
        body: Request body bytes
        scheme: URL scheme
        raw_url: Request URI exactly as received
        host: Host the request was addressed to
        remote_addr: Client address
    """

    method: str = "GET"
    url: str = "/"
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    scheme: str = "http"
    raw_url: str = ""
    host: str = ""
    remote_addr: str = ""

    def get_header(self, name: str, default: str = "") -> str:
        """Get header value (case-insensitive)."""
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return default

    @property
    def path(self) -> str:
        return self.url.split("?", 1)[0]


@dataclass
class Response:
    """Response handed back to the client."""

    status_code: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")
