"""
Request rewriting for the badge renderer.

The director turns a copy of the inbound request into the request the
renderer understands. The inbound request itself is never modified so it
stays usable for logging.
"""

from dataclasses import dataclass, field
from typing import Mapping, Optional

import httpx

from viewcounter.errors import UpstreamTargetError

# Hop-by-hop headers are connection specific and never forwarded
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)


@dataclass(frozen=True)
class UpstreamTarget:
    """Scheme, host and path of the renderer endpoint."""

    scheme: str
    host: str
    path: str

    @classmethod
    def parse(cls, url: str) -> "UpstreamTarget":
        """Parse the renderer URL once at startup.

        Raises:
            UpstreamTargetError: if the URL is not an absolute http(s) URL
        """
        try:
            parsed = httpx.URL(url)
        except (httpx.InvalidURL, TypeError) as e:
            raise UpstreamTargetError(f"incorrect renderer url {url!r}: {e}") from e

        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise UpstreamTargetError(f"incorrect renderer url {url!r}: expected http(s)://host/path")

        host = f"[{parsed.host}]" if ":" in parsed.host else parsed.host
        if parsed.port is not None:
            host = f"{host}:{parsed.port}"
        return cls(scheme=parsed.scheme, host=host, path=parsed.path or "/")

    @property
    def url(self) -> httpx.URL:
        return httpx.URL(f"{self.scheme}://{self.host}{self.path}")


@dataclass
class ForwardedRequest:
    """Mutable copy of an inbound request on its way upstream."""

    method: str
    url: httpx.URL
    headers: httpx.Headers = field(default_factory=httpx.Headers)

    @classmethod
    def from_inbound(
        cls, method: str, url: str, headers: Mapping[str, str]
    ) -> "ForwardedRequest":
        # Starlette and httpx headers both keep repeated keys
        pairs = headers.multi_items() if isinstance(headers, httpx.Headers) else headers.items()
        copied = [(k, v) for k, v in pairs if k.lower() not in HOP_BY_HOP_HEADERS]
        return cls(method=method.upper(), url=httpx.URL(str(url)), headers=httpx.Headers(copied))

    def add_header(self, name: str, value: str) -> None:
        """Append a header value, keeping any values already present."""
        self.headers = httpx.Headers(list(self.headers.multi_items()) + [(name, value)])

    @property
    def host(self) -> str:
        return self.headers.get("host", self.url.netloc.decode("ascii"))


class Director:
    """Rewrites forwarded requests so they reach the renderer."""

    def __init__(self, target: UpstreamTarget):
        self.target = target

    def __call__(
        self, request: ForwardedRequest, params: Optional[Mapping[str, str]] = None
    ) -> None:
        """Rewrite ``request`` in place.

        The inbound path and query string are dropped. ``params`` becomes the
        new query string when given.
        """
        request.add_header("X-Forwarded-Host", request.host)
        request.add_header("X-Origin-Host", self.target.host)
        request.add_header("Cache-Control", "no-cache")
        request.url = self.target.url.copy_with(params=dict(params) if params else None)
        # Virtual-hosted renderers route on the Host header
        request.headers["Host"] = self.target.host
