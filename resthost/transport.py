# FILE: resthost/transport.py
from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Pattern, Set, Tuple, Union

from fastapi import FastAPI
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response
from starlette.routing import BaseRoute, Match, NoMatchFound, request_response
from starlette.staticfiles import StaticFiles

from .config import Settings
from .errors import LifecycleError, ResourceError
from .logging import RequestLogMiddleware
from .routes import build_url

logger = logging.getLogger(__name__)

_PARAM_RE = re.compile(r":([A-Za-z_][A-Za-z0-9_]*)")


# ---------------------------------------------------------------------------
# Request / response plumbing
# ---------------------------------------------------------------------------


async def _parse_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return None
    ctype = request.headers.get("content-type", "").split(";", 1)[0].strip().lower()
    if ctype == "application/json" or ctype.endswith("+json"):
        try:
            return json.loads(raw)
        except ValueError:
            raise HTTPException(status_code=400, detail="malformed json body")
    if ctype in ("application/x-www-form-urlencoded", "multipart/form-data"):
        form = await request.form()
        return dict(form)
    return raw


@dataclass
class InboundRequest:
    """
    Transport-neutral view of one inbound HTTP request.

    ``state`` is the per-request scratch space the dispatcher attaches its
    metric key, resource/action names and permission-check closure to.
    """

    raw: Request
    method: str
    path: str
    url: str
    params: Dict[str, Any]
    query: Dict[str, str]
    headers: Dict[str, str]
    cookies: Dict[str, str]
    body: Any = None
    user: Any = None
    context: Dict[str, Any] = field(default_factory=dict)
    state: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    async def from_request(cls, request: Request) -> "InboundRequest":
        body = await _parse_body(request)
        # Populated by starlette's AuthenticationMiddleware or upstream code.
        user = request.scope.get("user")
        if user is None:
            user = getattr(request.state, "user", None)
        context = getattr(request.state, "context", None)
        if context is None:
            context = {}
            request.state.context = context
        return cls(
            raw=request,
            method=request.method.lower(),
            path=request.url.path,
            url=str(request.url),
            params=dict(request.path_params),
            query=dict(request.query_params),
            headers=dict(request.headers),
            cookies=dict(request.cookies),
            body=body,
            user=user,
            context=context,
        )


class ResponseChannel:
    """
    Single-assignment slot for the outbound response.

    ``send`` settles the slot once; later sends are dropped and reported
    through the return value. ``on_finish`` callbacks run once after the
    response body has been written (or when the request aborts).
    """

    def __init__(self) -> None:
        self._future: "asyncio.Future[Response]" = asyncio.get_running_loop().create_future()
        self._finish_callbacks: List[Callable[[], Any]] = []
        self._finished = False

    @property
    def headers_sent(self) -> bool:
        return self._future.done()

    def send(self, response: Response) -> bool:
        if self._future.done():
            logger.warning("response already sent; dropping status %s", response.status_code)
            return False
        self._future.set_result(response)
        return True

    def on_finish(self, callback: Callable[[], Any]) -> None:
        self._finish_callbacks.append(callback)

    def finish(self) -> None:
        if self._finished:
            return
        self._finished = True
        for cb in self._finish_callbacks:
            cb()

    async def wait(self) -> Response:
        return await self._future


Handler = Callable[[InboundRequest, ResponseChannel], Awaitable[None]]


def _attach_finish(response: Response, finish: Callable[[], None]) -> None:
    previous = response.background

    async def _after() -> None:
        try:
            if previous is not None:
                await previous()
        finally:
            finish()

    response.background = BackgroundTask(_after)


def _make_endpoint(handler: Handler) -> Callable[[Request], Awaitable[Response]]:
    async def endpoint(request: Request) -> Response:
        req = await InboundRequest.from_request(request)
        res = ResponseChannel()
        try:
            await handler(req, res)
            if not res.headers_sent:
                logger.warning("%s %s completed without a response", req.method.upper(), req.path)
                res.send(Response(status_code=204))
            response = await res.wait()
        except BaseException:
            res.finish()
            raise
        _attach_finish(response, res.finish)
        return response

    return endpoint


# ---------------------------------------------------------------------------
# Pattern routes
# ---------------------------------------------------------------------------


class PatternRoute(BaseRoute):
    """
    Route matched by a compiled regular expression instead of a path template.
    Named groups become path params.
    """

    def __init__(self, pattern: Pattern[str], endpoint: Callable[..., Any], methods: List[str], name: str = ""):
        self.pattern = pattern
        self.path = pattern.pattern
        self.endpoint = endpoint
        self.name = name or pattern.pattern
        self.methods: Set[str] = {m.upper() for m in methods}
        if "GET" in self.methods:
            self.methods.add("HEAD")
        self.app = request_response(endpoint)

    def matches(self, scope: Dict[str, Any]) -> Tuple[Match, Dict[str, Any]]:
        if scope["type"] != "http":
            return Match.NONE, {}
        m = self.pattern.match(scope["path"])
        if not m:
            return Match.NONE, {}
        params = dict(scope.get("path_params", {}))
        params.update({k: v for k, v in m.groupdict().items() if v is not None})
        child_scope = {"endpoint": self.endpoint, "path_params": params}
        if scope["method"] not in self.methods:
            return Match.PARTIAL, child_scope
        return Match.FULL, child_scope

    def url_path_for(self, name: str, /, **path_params: Any):
        raise NoMatchFound(name, path_params)

    async def handle(self, scope, receive, send) -> None:
        if scope["method"] not in self.methods:
            headers = {"Allow": ", ".join(sorted(self.methods))}
            response = PlainTextResponse("Method Not Allowed", status_code=405, headers=headers)
            await response(scope, receive, send)
        else:
            await self.app(scope, receive, send)


# ---------------------------------------------------------------------------
# Path-scoped hooks
# ---------------------------------------------------------------------------

Hook = Callable[[Request], Awaitable[Optional[Response]]]


class _HookMiddleware:
    """
    ASGI middleware running path-scoped hooks before routing. A hook returning
    a Response short-circuits the request; None passes it on.
    """

    def __init__(self, app, *, hooks: List[Tuple[str, Hook]]):
        self.app = app
        self.hooks = hooks

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http" and self.hooks:
            path = scope.get("path", "")
            for prefix, hook in list(self.hooks):
                if prefix != "/" and not (path == prefix or path.startswith(prefix + "/")):
                    continue
                response = await hook(Request(scope, receive))
                if response is not None:
                    await response(scope, receive, send)
                    return
        await self.app(scope, receive, send)


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class HttpTransport:
    """
    FastAPI-backed transport used by the http adapter.

    Exposes the narrow surface the dispatcher needs: ``route``, ``static``,
    ``middleware``, ``build_url`` and a ``start``/``stop`` lifecycle around a
    uvicorn server.
    """

    def __init__(self, settings: Settings, *, app: Optional[FastAPI] = None):
        self.settings = settings
        self.app = app or FastAPI(
            title=settings.app_name,
            version=settings.version,
            openapi_url=None,
            docs_url=None,
            redoc_url=None,
        )
        self._hooks: List[Tuple[str, Hook]] = []
        self._registered: Set[Tuple[str, str]] = set()
        self._server: Any = None
        self.app.add_middleware(_HookMiddleware, hooks=self._hooks)
        if settings.log_requests:
            self.app.add_middleware(RequestLogMiddleware)

    build_url = staticmethod(build_url)

    def _full_path(self, url: str) -> str:
        prefix = build_url(self.settings.url_prefix)
        if prefix == "/" or url == prefix or url.startswith(prefix + "/"):
            return url
        return build_url(prefix, url)

    def route(self, url: Union[str, Pattern[str]], method: str, handler: Handler) -> None:
        endpoint = _make_endpoint(handler)
        verb = method.upper()
        if isinstance(url, re.Pattern):
            key = (url.pattern, verb)
            if key in self._registered:
                raise ResourceError(f"route {verb} {url.pattern} already registered")
            self._registered.add(key)
            self.app.router.routes.append(PatternRoute(url, endpoint, [verb]))
            return
        path = _PARAM_RE.sub(r"{\1}", self._full_path(url))
        key = (path, verb)
        if key in self._registered:
            raise ResourceError(f"route {verb} {path} already registered")
        self._registered.add(key)
        self.app.router.add_route(path, endpoint, methods=[verb])

    def static(self, url: str, options: Dict[str, Any]) -> None:
        directory = options["path"]
        self.app.mount(
            url,
            StaticFiles(
                directory=directory,
                html=bool(options.get("html", False)),
                follow_symlink=bool(options.get("follow_symlink", False)),
                check_dir=False,
            ),
        )
        logger.debug("serving static assets from %s at %s", directory, url)

    def middleware(self, path: str, hook: Hook) -> None:
        self._hooks.append((build_url(path), hook))

    def add_endpoint(self, path: str, endpoint: Callable[[Request], Awaitable[Response]], method: str = "GET") -> None:
        self.app.router.add_route(path, endpoint, methods=[method.upper()])

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def start(self) -> Any:
        import uvicorn

        if self._server is not None:
            raise LifecycleError("transport already started")
        config = uvicorn.Config(
            self.app,
            host=self.settings.host,
            port=self.settings.port,
            log_config=None,
        )
        self._server = uvicorn.Server(config)
        return self._server

    def stop(self) -> None:
        if self._server is not None:
            self._server.should_exit = True
            self._server = None
