import httpx
import pytest
import respx
from fastapi.testclient import TestClient

from viewcounter.app import create_app
from viewcounter.errors import CountUpdateError
from viewcounter.metrics import MetricNames
from viewcounter.persistence import ViewCountStore
from viewcounter.transport import build_client

RENDERER_HOST = "img.shields.io"
RENDERER_PATH = "/static/v1"
SVG = '<svg xmlns="http://www.w3.org/2000/svg"><text>1</text></svg>'


def renderer_route(mock, **kwargs):
    return mock.get(host=RENDERER_HOST, path=RENDERER_PATH, **kwargs)


def test_badge_request_is_forwarded_to_renderer(client):
    with respx.mock(assert_all_called=True) as mock:
        route = renderer_route(mock).respond(
            200, text=SVG, headers={"content-type": "image/svg+xml;charset=utf-8"}
        )

        resp = client.get("/stats/github/alice/count.svg")

    assert resp.status_code == 200
    assert resp.text == SVG
    assert resp.headers["content-type"] == "image/svg+xml;charset=utf-8"

    upstream = route.calls.last.request
    assert upstream.method == "GET"
    assert upstream.url.scheme == "https"
    assert upstream.url.host == RENDERER_HOST
    assert upstream.url.path == RENDERER_PATH
    assert upstream.headers["host"] == RENDERER_HOST
    assert upstream.headers["x-forwarded-host"] == "testserver"
    assert upstream.headers["x-origin-host"] == RENDERER_HOST
    assert upstream.headers["cache-control"] == "no-cache"


def test_badge_query_carries_label_and_live_count(client):
    with respx.mock(assert_all_called=True) as mock:
        route = renderer_route(mock).respond(200, text=SVG)

        client.get("/stats/github/alice/count.svg")
        client.get("/stats/github/alice/count.svg")
        client.get("/stats/github/bob/count.svg")

    first, second, third = (call.request.url.params for call in route.calls)
    assert first["label"] == "GitHub Profile Views"
    assert first["message"] == "1"
    assert first["color"] == "brightgreen"
    assert "style" not in first
    assert second["message"] == "2"
    assert third["message"] == "1"


def test_unknown_service_uses_plain_label(client):
    with respx.mock(assert_all_called=True) as mock:
        route = renderer_route(mock).respond(200, text=SVG)

        resp = client.get("/stats/codeberg/alice/count.svg")

    assert resp.status_code == 200
    assert route.calls.last.request.url.params["label"] == "Profile Views"


def test_color_and_style_overrides_other_params_dropped(client):
    with respx.mock(assert_all_called=True) as mock:
        route = renderer_route(mock).respond(200, text=SVG)

        client.get("/stats/github/alice/count.svg?color=blue&style=flat-square&message=9999")

    params = route.calls.last.request.url.params
    assert params["color"] == "blue"
    assert params["style"] == "flat-square"
    assert params["message"] == "1"


def test_same_request_twice_makes_two_upstream_calls(client):
    with respx.mock(assert_all_called=True) as mock:
        route = renderer_route(mock).respond(200, text=SVG)

        client.get("/stats/github/alice/count.svg")
        client.get("/stats/github/alice/count.svg")

    assert route.call_count == 2
    first, second = (call.request for call in route.calls)
    assert first.url.copy_remove_param("message") == second.url.copy_remove_param("message")
    assert first.headers.multi_items() == second.headers.multi_items()


def test_upstream_status_and_headers_are_relayed(client):
    with respx.mock(assert_all_called=True) as mock:
        renderer_route(mock).respond(
            404, text="badge not found", headers={"x-renderer": "shields"}
        )

        resp = client.get("/stats/github/alice/count.svg")

    assert resp.status_code == 404
    assert resp.text == "badge not found"
    assert resp.headers["x-renderer"] == "shields"


@pytest.mark.parametrize(
    "error",
    [
        httpx.ConnectError("connection refused"),
        httpx.ReadTimeout("timed out"),
    ],
)
def test_transport_failure_returns_bad_gateway(client, app, error):
    with respx.mock(assert_all_called=True) as mock:
        renderer_route(mock).mock(side_effect=error)

        resp = client.get("/stats/github/alice/count.svg")

    assert resp.status_code == 502
    counter = app.state.metrics.get_counter(
        "proxy_errors_total", labels={"error": type(error).__name__}
    )
    assert counter.count == 1


@pytest.mark.parametrize(
    "path",
    [
        "/",
        "/stats/github/alice",
        "/stats/github/alice/count.png",
        "/stats/github/count.svg",
        "/stats//alice/count.svg",
        "/stats/github/alice/extra/count.svg",
        "/docs",
        "/openapi.json",
    ],
)
def test_unmatched_paths_are_not_found_and_never_proxied(client, path):
    with respx.mock(assert_all_called=False) as mock:
        route = renderer_route(mock).respond(200, text=SVG)

        resp = client.get(path)

    assert resp.status_code == 404
    assert route.call_count == 0


@pytest.mark.parametrize("method", ["POST", "PUT", "PATCH", "DELETE", "HEAD"])
def test_wrong_method_is_rejected_and_never_proxied(client, method):
    with respx.mock(assert_all_called=False) as mock:
        route = renderer_route(mock).respond(200, text=SVG)

        resp = client.request(method, "/stats/github/alice/count.svg")

    assert resp.status_code == 405
    assert route.call_count == 0


def test_wrong_method_does_not_count_a_view(client, app):
    client.post("/stats/github/alice/count.svg")

    assert app.state.store.get("github", "alice") == 0


def test_count_failure_returns_service_unavailable(client, monkeypatch):
    def fail(self, service, user):
        raise CountUpdateError("database gone")

    monkeypatch.setattr(ViewCountStore, "increment", fail)

    with respx.mock(assert_all_called=False) as mock:
        route = renderer_route(mock).respond(200, text=SVG)

        resp = client.get("/stats/github/alice/count.svg")

    assert resp.status_code == 503
    assert route.call_count == 0


@pytest.mark.parametrize("method", ["GET", "HEAD"])
def test_health_check(client, method):
    with respx.mock(assert_all_called=False) as mock:
        route = renderer_route(mock).respond(200, text=SVG)

        resp = client.request(method, "/healthz")

    assert resp.status_code == 200
    assert route.call_count == 0


def test_request_id_header_is_echoed(client):
    with respx.mock(assert_all_called=True) as mock:
        renderer_route(mock).respond(200, text=SVG)

        resp = client.get("/stats/github/alice/count.svg", headers={"X-Request-ID": "req-abc"})

    assert resp.headers["x-request-id"] == "req-abc"


def test_request_metrics_use_normalized_path(client, app):
    with respx.mock(assert_all_called=True) as mock:
        renderer_route(mock).respond(200, text=SVG)

        client.get("/stats/github/alice/count.svg")

    counter = app.state.metrics.get_counter(
        "requests_total",
        labels={"method": "GET", "path": "/stats/{service}/{user}/count.svg", "status": "200"},
    )
    assert counter.count == 1


def test_unmatched_paths_share_one_metric_key(client, app):
    for i in range(50):
        assert client.get(f"/random/{i}").status_code == 404

    metrics = app.state.metrics
    counter = metrics.get_counter(
        "requests_total", labels={"method": "GET", "path": "unmatched", "status": "404"}
    )
    assert counter.count == 50
    assert len(metrics.get_all_metrics()["counters"]) == 1
    assert len(metrics.get_all_metrics()["timers"]) == 1


def test_unmapped_services_share_one_view_metric(client, app):
    with respx.mock(assert_all_called=True) as mock:
        renderer_route(mock).respond(200, text=SVG)

        client.get("/stats/github/alice/count.svg")
        for i in range(10):
            client.get(f"/stats/service-{i}/alice/count.svg")

    metrics = app.state.metrics
    assert metrics.get_counter(MetricNames.VIEWS_INCREMENTED, labels={"service": "github"}).count == 1
    assert metrics.get_counter(MetricNames.VIEWS_INCREMENTED, labels={"service": "other"}).count == 10


def test_repeated_upstream_headers_are_relayed_separately(client):
    with respx.mock(assert_all_called=True) as mock:
        renderer_route(mock).respond(
            200,
            text=SVG,
            headers=[("set-cookie", "a=1"), ("set-cookie", "b=2"), ("x-served-by", "r1")],
        )

        resp = client.get("/stats/github/alice/count.svg")

    assert resp.headers.get_list("set-cookie") == ["a=1", "b=2"]
    assert resp.headers["x-served-by"] == "r1"


def test_custom_renderer_target(config, database, test_logger):
    config = config.model_copy(update={"renderer_url": "http://renderer.local:8080/badge"})
    app = create_app(config, database, build_client(), logger=test_logger)

    with respx.mock(assert_all_called=True) as mock:
        route = mock.get(host="renderer.local", port=8080, path="/badge").respond(200, text=SVG)

        resp = TestClient(app).get("/stats/gitlab/carol/count.svg")

    assert resp.status_code == 200
    assert route.calls.last.request.headers["host"] == "renderer.local:8080"
