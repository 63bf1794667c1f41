import asyncio
from typing import Mapping, Optional

import httpx
from fastapi import FastAPI, Request, Response

from viewcounter.config import ViewCounterConfig
from viewcounter.director import Director, UpstreamTarget
from viewcounter.errors import CountUpdateError
from viewcounter.logging import EventType, ViewCounterLogger, get_logger
from viewcounter.metrics import MetricNames, MetricsCollector
from viewcounter.middleware import add_logging_middleware
from viewcounter.models import BadgeQuery
from viewcounter.persistence import DatabaseManager, ViewCountStore
from viewcounter.proxy import BadgeProxy

# Inbound query parameters callers may use to style their badge
STYLE_OVERRIDES = ("color", "style")


def build_badge_query(
    config: ViewCounterConfig, service: str, views: int, query: Mapping[str, str]
) -> BadgeQuery:
    """Renderer query for a badge showing ``views``."""
    display_name = config.display_name(service)
    label = f"{display_name} {config.badge_label}" if display_name else config.badge_label
    overrides = {k: query[k] for k in STYLE_OVERRIDES if query.get(k)}
    return BadgeQuery(
        label=label,
        message=str(views),
        color=overrides.get("color", config.badge_color),
        style=overrides.get("style"),
    )


def create_app(
    config: ViewCounterConfig,
    database: DatabaseManager,
    client: httpx.AsyncClient,
    target: Optional[UpstreamTarget] = None,
    logger: Optional[ViewCounterLogger] = None,
    metrics: Optional[MetricsCollector] = None,
) -> FastAPI:
    """Build the route table.

    Only the badge route and the health check exist; anything else is 404 and
    a wrong method on the badge path is 405.
    """
    logger = logger or get_logger()
    metrics = metrics or MetricsCollector()
    target = target or UpstreamTarget.parse(config.renderer_url)

    store = ViewCountStore(database)
    proxy = BadgeProxy(client, Director(target), logger=logger, metrics=metrics)

    app = FastAPI(title="Profile Views Counter", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.config = config
    app.state.store = store
    app.state.proxy = proxy
    app.state.metrics = metrics

    add_logging_middleware(app, logger=logger, metrics=metrics)

    @app.get("/stats/{service}/{user}/count.svg", name="ProfileCountBadge")
    async def profile_count_badge(request: Request, service: str, user: str) -> Response:
        """Count one view and return the rendered badge."""
        try:
            views = await asyncio.to_thread(store.increment, service, user)
        except CountUpdateError as e:
            logger.error(
                "failed to record profile view",
                event_type=EventType.COUNT_ERROR,
                service=service,
                user=user,
                metadata={"error": str(e)},
            )
            metrics.increment_counter(MetricNames.COUNT_ERRORS)
            return Response(status_code=503, content="Service Unavailable", media_type="text/plain")

        logger.debug(
            f"views for {service}/{user}: {views}",
            event_type=EventType.COUNT_INCREMENTED,
            service=service,
            user=user,
        )
        # Unmapped services share one key so callers cannot grow the metric maps
        service_label = service if config.display_name(service) is not None else "other"
        metrics.increment_counter(MetricNames.VIEWS_INCREMENTED, labels={"service": service_label})

        query = build_badge_query(config, service, views, request.query_params)
        return await proxy.forward(request, query.to_params(), service=service, user=user)

    @app.api_route("/healthz", methods=["GET", "HEAD"])
    async def health_check() -> Response:
        return Response(status_code=200)

    return app
