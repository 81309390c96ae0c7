# FILE: resthost/host.py
from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .adapter import HttpAdapter
from .auth import AuthProvider, build_gate
from .config import Settings, load_settings
from .errors import LifecycleError
from .logging import get_logger
from .metrics import Metrics
from .resources import ResourceDefinition, index_resources, load_resources
from .routes import build_path, build_url
from .transport import HttpTransport

ResourceLike = Union[ResourceDefinition, Mapping[str, Any]]


class EventChannel:
    """Per-host publish/subscribe channel for lifecycle events."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[Callable[[Any], Any]]] = defaultdict(list)

    def subscribe(self, topic: str, fn: Callable[[Any], Any]) -> Callable[[], None]:
        self._subscribers[topic].append(fn)

        def unsubscribe() -> None:
            if fn in self._subscribers[topic]:
                self._subscribers[topic].remove(fn)

        return unsubscribe

    def publish(self, topic: str, data: Any = None) -> None:
        for fn in list(self._subscribers.get(topic, ())):
            fn(data)


class Host:
    """
    Application context: owns settings, metrics, transport, adapter and the
    optional authorization provider. Nothing here is process-global; build as
    many hosts as needed.

        host = Host(load_settings(), auth=MyProvider(), resources=[widgets])
        host.start()            # wire resources, publish host.started
        client = TestClient(host.app)
        host.stop()

    Events (``host.on(topic, fn)``): resources.loaded, host.started,
    host.stopped.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        auth: Optional[AuthProvider] = None,
        resources: Optional[Iterable[ResourceLike]] = None,
        metrics: Optional[Metrics] = None,
        app: Optional[FastAPI] = None,
    ):
        self.settings = settings or load_settings()
        self.log = get_logger("resthost.host")
        self.auth = auth
        self.metrics = metrics or Metrics(prefix=self.settings.metrics_prefix)
        self.events = EventChannel()
        self.transport = HttpTransport(self.settings, app=app)
        self.adapter = HttpAdapter(
            self.settings,
            self.transport,
            self.metrics,
            build_gate(auth, self.metrics),
        )
        self._definitions: List[ResourceDefinition] = [
            ResourceDefinition.coerce(r) for r in (resources or ())
        ]
        self.resources: Dict[str, ResourceDefinition] = {}
        self.meta: Dict[str, Any] = {}
        self._wired = False
        self._started = False
        self._server: Any = None

        if not self.settings.no_options:
            self.transport.middleware(self.api_root, self._options)

    @property
    def app(self) -> FastAPI:
        return self.transport.app

    @property
    def api_root(self) -> str:
        return build_url(self.settings.url_prefix, self.settings.effective_api_prefix)

    @property
    def started(self) -> bool:
        return self._started

    def on(self, topic: str, fn: Callable[[Any], Any]) -> Callable[[], None]:
        return self.events.subscribe(topic, fn)

    # ------------------------------------------------------------------ #
    # Wiring
    # ------------------------------------------------------------------ #

    def _load(self) -> Dict[str, ResourceDefinition]:
        definitions = list(self._definitions)
        if self.settings.resources:
            definitions.extend(load_resources(self.settings.resources, self))
        return index_resources(definitions)

    def _wire(self) -> None:
        self.resources = self._load()
        for name, resource in self.resources.items():
            self.meta[name] = self.adapter.wireup_resource(resource, resource.base_path, self.resources)
        self.meta["prefix"] = build_url(self.settings.effective_api_prefix)

        if self.settings.metrics_endpoint:
            self.transport.add_endpoint(self.settings.metrics_endpoint, self._metrics_endpoint)
        if self.settings.static:
            # Mounted last: "/" shadows every later route.
            self.transport.static("/", {"path": build_path(self.settings.static)})

        self._wired = True
        self.log.info("wired %d resources", len(self.resources))
        self.events.publish("resources.loaded", self.resources)

    async def _options(self, request: Request) -> Optional[Response]:
        if request.method.upper() == "OPTIONS":
            return JSONResponse(jsonable_encoder(self.meta))
        return None

    async def _metrics_endpoint(self, request: Request) -> Response:
        return Response(self.metrics.exposition(), media_type=self.metrics.content_type)

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> Dict[str, ResourceDefinition]:
        """Wire resources (first start only) and mark the host started."""
        if self._started:
            raise LifecycleError("host already started")
        if not self._wired:
            self._wire()
        self._started = True
        self.events.publish("host.started", self)
        return self.resources

    def stop(self) -> None:
        if not self._started:
            raise LifecycleError("host is not started")
        self.transport.stop()
        self._server = None
        self._started = False
        self.events.publish("host.stopped", self)

    async def serve(self) -> None:
        """Start (if needed) and serve with uvicorn until stopped."""
        if not self._started:
            self.start()
        self._server = self.transport.start()
        await self._server.serve()

    def run(self) -> None:
        asyncio.run(self.serve())


__all__ = ["EventChannel", "Host"]
