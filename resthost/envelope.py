# FILE: resthost/envelope.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from fastapi.encoders import jsonable_encoder
from starlette.exceptions import HTTPException
from starlette.responses import (
    FileResponse,
    JSONResponse,
    PlainTextResponse,
    RedirectResponse,
    Response,
)

from .metrics import Metrics
from .transport import InboundRequest, ResponseChannel

logger = logging.getLogger(__name__)


@dataclass
class Reply:
    """
    Structured handler result.

    Fields:
      - data     : body; str -> text/plain, bytes -> octet-stream, else JSON
      - status   : HTTP status code
      - headers  : extra response headers
      - cookies  : name -> value, or name -> Response.set_cookie kwargs
      - redirect : location; takes precedence over data
      - file     : path streamed with FileResponse; takes precedence over data
    """

    data: Any = None
    status: int = 200
    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, Union[str, Mapping[str, Any]]] = field(default_factory=dict)
    redirect: Optional[str] = None
    file: Optional[str] = None
    media_type: Optional[str] = None


def render_data(data: Any, status: int = 200, headers: Optional[Mapping[str, str]] = None,
                media_type: Optional[str] = None) -> Response:
    hdrs = dict(headers or {})
    if data is None:
        return Response(status_code=status, headers=hdrs, media_type=media_type)
    if isinstance(data, str):
        if media_type:
            return Response(data, status_code=status, headers=hdrs, media_type=media_type)
        return PlainTextResponse(data, status_code=status, headers=hdrs)
    if isinstance(data, (bytes, bytearray)):
        return Response(bytes(data), status_code=status, headers=hdrs,
                        media_type=media_type or "application/octet-stream")
    return JSONResponse(jsonable_encoder(data), status_code=status, headers=hdrs)


class HttpEnvelope:
    """
    Per-request adapter between a handler and the HTTP response.

    Handlers read the inbound request through ``data`` (parsed body),
    ``params`` (query + path params), ``headers``, ``cookies``, ``user`` and
    ``context``, and either return a result (rendered by ``handle_return``)
    or reply themselves through ``reply``/``redirect``/``reply_with_file``
    and return None. ``resource_definition`` is the ResourceDefinition that
    owns the action, so plain-function handlers can reach their resource.
    """

    transport = "http"

    def __init__(self, req: InboundRequest, res: ResponseChannel, metric_key: List[str],
                 metrics: Optional[Metrics] = None, *, resource_definition: Any = None):
        self.request = req
        self.resource_definition = resource_definition
        self._res = res
        self._metrics = metrics
        self.metric_key = list(metric_key)
        self.resource = req.state.get("resource")
        self.action = req.state.get("action")
        self.method = req.method
        self.path = req.path
        self.url = req.url
        self.user = req.user
        self.context = req.context
        self.headers = req.headers
        self.cookies = req.cookies
        self.data = req.body if req.body is not None else {}
        self.params: Dict[str, Any] = dict(req.query)
        self.params.update(req.params)

    @property
    def responded(self) -> bool:
        return self._res.headers_sent

    # ------------------------------------------------------------------ #
    # Explicit replies
    # ------------------------------------------------------------------ #

    def reply(self, data: Any = None, *, status: int = 200,
              headers: Optional[Mapping[str, str]] = None,
              media_type: Optional[str] = None) -> bool:
        return self._res.send(render_data(data, status, headers, media_type))

    def redirect(self, url: str, *, status: int = 302) -> bool:
        return self._res.send(RedirectResponse(url, status_code=status))

    def reply_with_file(self, path: str, *, filename: Optional[str] = None,
                        media_type: Optional[str] = None,
                        headers: Optional[Mapping[str, str]] = None) -> bool:
        return self._res.send(
            FileResponse(path, filename=filename, media_type=media_type, headers=dict(headers or {}))
        )

    # ------------------------------------------------------------------ #
    # Outcome rendering
    # ------------------------------------------------------------------ #

    def handle_return(self, settings: Any, resource: Any, action: Any, result: Any) -> bool:
        if isinstance(result, Response):
            return self._res.send(result)
        if isinstance(result, BaseException):
            if self.responded:
                logger.debug("handler error after reply for %s dropped: %r", self.path, result)
                return False
            return self._res.send(self._render_error(result))
        if isinstance(result, Reply):
            return self._res.send(self._render_reply(result))
        return self._res.send(render_data(result))

    def _render_error(self, err: BaseException) -> Response:
        if self._metrics is not None:
            self._metrics.meter(self.metric_key + ["errors"]).record(1, name="HTTP_API_ERRORS")
        if isinstance(err, HTTPException):
            return JSONResponse(
                {"message": err.detail},
                status_code=err.status_code,
                headers=dict(err.headers or {}),
            )
        logger.debug("rendering handler error for %s: %r", self.path, err)
        return JSONResponse({"message": str(err)}, status_code=500)

    def _render_reply(self, reply: Reply) -> Response:
        if reply.redirect:
            status = reply.status if 300 <= reply.status < 400 else 302
            response: Response = RedirectResponse(reply.redirect, status_code=status,
                                                  headers=dict(reply.headers))
        elif reply.file:
            response = FileResponse(reply.file, status_code=reply.status,
                                    headers=dict(reply.headers), media_type=reply.media_type)
        else:
            response = render_data(reply.data, reply.status, reply.headers, reply.media_type)
        for name, value in reply.cookies.items():
            if isinstance(value, Mapping):
                response.set_cookie(name, **value)
            else:
                response.set_cookie(name, str(value))
        return response


__all__ = ["Reply", "HttpEnvelope", "render_data"]
