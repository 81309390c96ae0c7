# resthost/tests/test_host.py
import re
import textwrap

import pytest
from fastapi.testclient import TestClient

from resthost.config import Settings
from resthost.errors import LifecycleError, ResourceError
from resthost.host import EventChannel, Host
from resthost.resources import ActionDefinition, ResourceDefinition, load_resources


def _widgets(**extra):
    return ResourceDefinition(
        name="widgets",
        actions={
            "list": ActionDefinition(method="get", url="", handle=lambda e: ["a", "b"]),
            "get": ActionDefinition(method="get", url="/:id", handle=lambda e: {"id": e.params["id"]}),
        },
        **extra,
    )


def test_options_returns_wired_metadata(make_host, client_for):
    host = make_host([_widgets()])
    r = client_for(host).options("/api")

    assert r.status_code == 200
    assert r.json() == {
        "widgets": {
            "routes": {
                "list": {"method": "get", "url": "/api/widgets"},
                "get": {"method": "get", "url": "/api/widgets/:id"},
            }
        },
        "prefix": "/api",
    }
    # Below the api root as well.
    assert client_for(host).options("/api/widgets").json()["prefix"] == "/api"


def test_options_can_be_disabled(make_host, client_for):
    host = make_host([_widgets()], no_options=True)
    assert client_for(host).options("/api/widgets").status_code == 405


def test_options_hook_leaves_other_methods_alone(make_host, client_for):
    host = make_host([_widgets()])
    assert client_for(host).get("/api/widgets").json() == ["a", "b"]


def test_metrics_endpoint(make_host, client_for):
    host = make_host([_widgets()])
    client = client_for(host)
    client.get("/api/widgets")

    r = client.get("/metrics")
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/plain")
    assert 'key="widgets-list.http.duration"' in r.text
    assert "resthost_duration_seconds" in r.text


def test_metrics_endpoint_can_be_disabled(make_host, client_for):
    host = make_host([_widgets()], metrics_endpoint=None)
    assert client_for(host).get("/metrics").status_code == 404


def test_metrics_prefix(make_host, client_for):
    host = make_host([_widgets()], metrics_prefix="shop")
    client = client_for(host)
    client.get("/api/widgets")
    assert "shop_duration_seconds_count" in client.get("/metrics").text
    assert host.metrics.prefix == "shop"
    assert host.adapter.metrics is host.metrics


def test_pattern_route(make_host, client_for):
    resource = ResourceDefinition(
        name="widgets",
        actions={
            "get": ActionDefinition(
                method="get",
                url=re.compile(r"^/widgets/(?P<id>\d+)$"),
                handle=lambda e: {"id": e.params["id"]},
            )
        },
    )
    client = client_for(make_host([resource]))

    assert client.get("/api/widgets/12").json() == {"id": "12"}
    assert client.get("/api/widgets/abc").status_code == 404
    assert client.post("/api/widgets/12").status_code == 405
    assert client.head("/api/widgets/12").status_code == 200


def test_url_prefix_applies_to_every_route(make_host, client_for):
    host = make_host([_widgets()], url_prefix="shop")
    client = client_for(host)

    assert client.get("/shop/api/widgets").json() == ["a", "b"]
    assert client.get("/shop/api/widgets/7").json() == {"id": "7"}
    assert client.get("/api/widgets").status_code == 404
    assert client.options("/shop/api").json()["prefix"] == "/api"


def test_empty_api_prefix(make_host, client_for):
    host = make_host([_widgets()], api_prefix="")
    assert client_for(host).get("/widgets").json() == ["a", "b"]


def test_duplicate_route_is_rejected():
    noop = lambda e: None  # noqa: E731
    resource = ResourceDefinition(
        name="widgets",
        actions={
            "list": ActionDefinition(method="get", url="", handle=noop),
            "all": ActionDefinition(method="get", url="/widgets", handle=noop),
        },
    )
    host = Host(Settings(log_requests=False), resources=[resource])
    with pytest.raises(ResourceError):
        host.start()


def test_duplicate_resource_names_are_rejected():
    host = Host(Settings(log_requests=False), resources=[_widgets(), _widgets()])
    with pytest.raises(ResourceError):
        host.start()


def test_mapping_definitions(make_host, client_for):
    host = make_host([{
        "name": "gadgets",
        "apiPrefix": "v2",
        "actions": {"list": {"method": "GET", "handler": lambda e: "all gadgets"}},
    }])
    assert client_for(host).get("/v2/gadgets").text == "all gadgets"


def test_resource_static_mount(make_host, client_for, tmp_path):
    public = tmp_path / "public"
    public.mkdir()
    (public / "hello.txt").write_text("hi")

    host = make_host([_widgets(static=str(public))])
    client = client_for(host)

    assert client.get("/widgets/hello.txt").text == "hi"
    assert host.meta["widgets"]["path"] == {"url": "/widgets", "directory": str(public)}


def test_resource_static_does_not_shadow_actions(make_host, client_for, tmp_path):
    public = tmp_path / "public"
    (public / "css").mkdir(parents=True)
    (public / "css" / "site.css").write_text("body {}")

    host = make_host([_widgets(static=str(public))], api_prefix="")
    client = client_for(host)

    assert client.get("/widgets").json() == ["a", "b"]
    assert client.get("/widgets/5").json() == {"id": "5"}
    assert client.get("/widgets/css/site.css").text == "body {}"


def test_app_static_mount_is_last(make_host, client_for, tmp_path):
    (tmp_path / "index.html").write_text("<h1>home</h1>")

    host = make_host([_widgets()], static=str(tmp_path))
    client = client_for(host)

    assert client.get("/index.html").text == "<h1>home</h1>"
    assert client.get("/api/widgets").json() == ["a", "b"]
    assert client.get("/metrics").status_code == 200


def _write_resource(root, name, body):
    pkg = root / name
    pkg.mkdir()
    (pkg / "resource.py").write_text(textwrap.dedent(body))
    return pkg


def test_load_resources_from_directory(tmp_path):
    _write_resource(tmp_path, "widgets", """
        def resource(host):
            return {
                "name": "widgets",
                "static": "./public",
                "actions": {
                    "list": {"method": "get", "handle": lambda e: {"host": host}},
                },
            }
    """)
    _write_resource(tmp_path, "broken", "value = 1\n")
    (tmp_path / "notes.txt").write_text("not a resource")

    marker = object()
    loaded = load_resources(str(tmp_path), marker)

    assert [r.name for r in loaded] == ["widgets"]
    assert loaded[0].base_path == str(tmp_path / "widgets")
    assert loaded[0].static.path == "./public"
    assert loaded[0].actions["list"].handle(None) == {"host": marker}


def test_load_resources_missing_directory(tmp_path):
    assert load_resources(str(tmp_path / "nope")) == []


def test_host_loads_resource_directory(tmp_path):
    pkg = _write_resource(tmp_path, "widgets", """
        def resource(host):
            return {
                "name": "widgets",
                "static": "public",
                "actions": {
                    "list": {"method": "get", "handle": lambda e: host.settings.app_name},
                },
            }
    """)
    (pkg / "public").mkdir()
    (pkg / "public" / "logo.txt").write_text("logo")

    host = Host(Settings(log_requests=False, resources=str(tmp_path), app_name="demo"))
    host.start()
    client = TestClient(host.app)

    assert client.get("/api/widgets").text == "demo"
    assert client.get("/widgets/logo.txt").text == "logo"
    assert host.meta["widgets"]["path"]["directory"] == str(pkg / "public")


def test_lifecycle_events():
    events = []
    host = Host(Settings(log_requests=False), resources=[_widgets()])
    host.on("resources.loaded", lambda data: events.append(("loaded", sorted(data))))
    host.on("host.started", lambda data: events.append(("started", data is host)))
    host.on("host.stopped", lambda data: events.append(("stopped", data is host)))

    host.start()
    assert host.started
    with pytest.raises(LifecycleError):
        host.start()

    host.stop()
    assert not host.started
    with pytest.raises(LifecycleError):
        host.stop()

    # Restart does not wire resources a second time.
    host.start()

    assert events == [
        ("loaded", ["widgets"]),
        ("started", True),
        ("stopped", True),
        ("started", True),
    ]


def test_event_channel_unsubscribe():
    channel = EventChannel()
    seen = []
    off = channel.subscribe("x", seen.append)
    channel.publish("x", 1)
    off()
    off()
    channel.publish("x", 2)
    channel.publish("unknown")
    assert seen == [1]


def test_hosts_are_isolated(make_host, client_for):
    a = make_host([_widgets()])
    b = make_host([_widgets()])
    client_for(a).get("/api/widgets")
    assert a.metrics.observations(["widgets-list", "http", "duration"], "HTTP_API_DURATION") == 1
    assert b.metrics.observations(["widgets-list", "http", "duration"], "HTTP_API_DURATION") == 0
