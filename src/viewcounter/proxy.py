"""
Badge proxy: forwards a rewritten request to the renderer and relays the answer.
"""

import time
from typing import AsyncIterator, Mapping, Optional

import httpx
from fastapi import Request, Response
from fastapi.responses import StreamingResponse

from viewcounter.director import HOP_BY_HOP_HEADERS, Director, ForwardedRequest
from viewcounter.logging import ViewCounterLogger, get_logger
from viewcounter.metrics import MetricNames, MetricsCollector


class BadgeProxy:
    """Single-attempt reverse proxy in front of the badge renderer."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        director: Director,
        logger: Optional[ViewCounterLogger] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.client = client
        self.director = director
        self.logger = logger or get_logger()
        self.metrics = metrics or MetricsCollector()

    def prepare(
        self, request: Request, params: Optional[Mapping[str, str]] = None
    ) -> ForwardedRequest:
        """Copy the inbound request and rewrite the copy for the renderer."""
        forwarded = ForwardedRequest.from_inbound(request.method, str(request.url), request.headers)
        self.director(forwarded, params)
        return forwarded

    async def forward(
        self,
        request: Request,
        params: Optional[Mapping[str, str]] = None,
        service: Optional[str] = None,
        user: Optional[str] = None,
    ) -> Response:
        """Send one upstream request and stream the response back unchanged.

        Transport failures (refused, timeout, TLS) become 502 Bad Gateway.
        """
        forwarded = self.prepare(request, params)
        target = str(forwarded.url)
        upstream_request = self.client.build_request(
            forwarded.method, forwarded.url, headers=forwarded.headers
        )

        start_time = time.time()
        self.logger.log_proxy_start(target, service=service, user=user)
        self.metrics.increment_counter(MetricNames.PROXY_REQUESTS)

        try:
            upstream_response = await self.client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            duration_ms = (time.time() - start_time) * 1000
            self.logger.log_proxy_error(
                target, e, service=service, user=user, duration_ms=duration_ms
            )
            self.metrics.increment_counter(
                MetricNames.PROXY_ERRORS, labels={"error": type(e).__name__}
            )
            return Response(status_code=502, content="Bad Gateway", media_type="text/plain")

        duration_ms = (time.time() - start_time) * 1000
        self.logger.log_proxy_end(
            target, upstream_response.status_code, duration_ms, service=service, user=user
        )
        self.metrics.record_timer(
            MetricNames.PROXY_DURATION,
            duration_ms,
            labels={"status": str(upstream_response.status_code)},
        )

        # Raw bytes keep content-encoding and content-length consistent
        response = StreamingResponse(
            content=self._relay(upstream_response),
            status_code=upstream_response.status_code,
        )
        # Repeated headers such as Set-Cookie are relayed one by one
        for key, value in upstream_response.headers.multi_items():
            if key.lower() not in HOP_BY_HOP_HEADERS:
                response.headers.append(key, value)
        return response

    async def _relay(self, upstream_response: httpx.Response) -> AsyncIterator[bytes]:
        # Release the upstream connection even when the caller goes away mid-stream
        try:
            async for chunk in upstream_response.aiter_raw():
                yield chunk
        finally:
            await upstream_response.aclose()
