# FILE: resthost/adapter.py
"""
HTTP adapter: maps resource actions onto transport routes.

Wiring (once per action):
    build_action_url / build_action_alias -> get_action_metadata -> transport.route

Per request:
    attach state -> start timer -> [authorize] -> invoke -> normalize -> envelope
"""

from __future__ import annotations

import enum
import inspect
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Pattern, Union

from starlette.responses import PlainTextResponse

from .auth import AuthorizationGate, describe_user
from .config import Settings
from .envelope import HttpEnvelope
from .logging import bind
from .metrics import Metrics, Timer
from .resources import ActionDefinition, ResourceDefinition
from .routes import build_action_alias, build_action_url, build_path, resolve_url_rule
from .transport import HttpTransport, InboundRequest, ResponseChannel

logger = logging.getLogger(__name__)

DENIED_MESSAGE = "User lacks sufficient permissions"


# ---------------------------------------------------------------------------
# Handler outcomes
# ---------------------------------------------------------------------------


class ErrorStrategy(enum.Enum):
    ABSORB = "absorb"        # handler exceptions become envelope outcomes
    PROPAGATE = "propagate"  # handler exceptions reach the transport

    @classmethod
    def from_settings(cls, settings: Optional[Settings]) -> "ErrorStrategy":
        return cls.ABSORB if settings is not None and settings.handle_route_errors else cls.PROPAGATE


@dataclass(frozen=True)
class Sync:
    value: Any


@dataclass(frozen=True)
class Deferred:
    awaitable: Awaitable[Any]


@dataclass(frozen=True)
class Empty:
    pass


HandlerResult = Union[Sync, Deferred, Empty]


# ---------------------------------------------------------------------------
# Per-action metadata
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ActionMetadata:
    alias: str
    url: Union[str, Pattern[str]]
    metric_key: tuple
    resource_key: tuple
    auth_attempted: Callable[[], None]
    auth_granted: Callable[[], None]
    auth_rejected: Callable[[], None]
    get_timer: Callable[[], Timer]
    get_envelope: Callable[[InboundRequest, ResponseChannel], HttpEnvelope]
    get_permission_check: Callable[[InboundRequest], Optional[Callable[[str], Awaitable[bool]]]]
    error_strategy: ErrorStrategy


def get_action_metadata(
    settings: Settings,
    metrics: Metrics,
    gate: Optional[AuthorizationGate],
    resource: ResourceDefinition,
    action_name: str,
    action: ActionDefinition,
    meta: Dict[str, Any],
    resources: Mapping[str, ResourceDefinition],
) -> ActionMetadata:
    url = build_action_url(
        settings,
        resource.name,
        action_name,
        action,
        resource,
        resources,
        rule=resolve_url_rule(settings, action),
    )
    alias = build_action_alias(resource.name, action_name)
    resource_key = ("-".join((resource.name, action_name)), "http")
    metric_key = (metrics.prefix,) + resource_key
    meta["routes"][action_name] = {
        "method": action.method,
        "url": url.pattern if isinstance(url, re.Pattern) else url,
    }

    attempts = metrics.meter(list(resource_key) + ["authorization", "attempts"])
    grants = metrics.meter(list(resource_key) + ["authorization", "granted"])
    rejections = metrics.meter(list(resource_key) + ["authorization", "rejected"])

    def auth_attempted() -> None:
        attempts.record(1, name="HTTP_AUTHORIZATION_ATTEMPTS")

    def auth_granted() -> None:
        grants.record(1, name="HTTP_AUTHORIZATION_GRANTED")

    def auth_rejected() -> None:
        rejections.record(1, name="HTTP_AUTHORIZATION_REJECTED")

    def get_timer() -> Timer:
        return metrics.timer(list(resource_key) + ["duration"])

    def get_envelope(req: InboundRequest, res: ResponseChannel) -> HttpEnvelope:
        return HttpEnvelope(req, res, list(metric_key), metrics, resource_definition=resource)

    def get_permission_check(req: InboundRequest):
        if gate is None:
            return None

        def check(identifier: str) -> Awaitable[bool]:
            return gate.check_permission(req.user, req.context, identifier)

        return check

    return ActionMetadata(
        alias=alias,
        url=url,
        metric_key=metric_key,
        resource_key=resource_key,
        auth_attempted=auth_attempted,
        auth_granted=auth_granted,
        auth_rejected=auth_rejected,
        get_timer=get_timer,
        get_envelope=get_envelope,
        get_permission_check=get_permission_check,
        error_strategy=ErrorStrategy.from_settings(settings),
    )


# ---------------------------------------------------------------------------
# Invocation and normalization
# ---------------------------------------------------------------------------


def invoke(meta: ActionMetadata, action: ActionDefinition, envelope: HttpEnvelope) -> HandlerResult:
    if meta.error_strategy is ErrorStrategy.ABSORB:
        try:
            result = action.handle(envelope)
        except Exception as err:
            logger.error(
                "API EXCEPTION! route: %s %s failed",
                action.method.upper(),
                meta.url,
                exc_info=True,
                extra={"alias": meta.alias},
            )
            return Sync(err)
    else:
        result = action.handle(envelope)

    if result is None:
        return Empty()
    if inspect.isawaitable(result):
        return Deferred(result)
    return Sync(result)


async def normalize(
    settings: Settings,
    resource: ResourceDefinition,
    action: ActionDefinition,
    envelope: HttpEnvelope,
    outcome: HandlerResult,
) -> None:
    if isinstance(outcome, Deferred):
        try:
            value = await outcome.awaitable
        except Exception as err:
            value = err
        # A deferred settling to nothing after an explicit reply is done.
        if value is not None or not envelope.responded:
            envelope.handle_return(settings, resource, action, value)
    elif isinstance(outcome, Sync):
        envelope.handle_return(settings, resource, action, outcome.value)


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class HttpAdapter:
    """
    Dispatcher for the HTTP transport.

    ``wireup_resource`` / ``wireup_action`` run once at startup and register
    one transport route per action; the registered handler is the per-request
    pipeline.
    """

    name = "http"

    def __init__(
        self,
        settings: Settings,
        transport: HttpTransport,
        metrics: Metrics,
        gate: Optional[AuthorizationGate] = None,
    ):
        self.settings = settings
        self.transport = transport
        self.metrics = metrics
        self.gate = gate

    async def respond(
        self,
        meta: ActionMetadata,
        req: InboundRequest,
        res: ResponseChannel,
        resource: ResourceDefinition,
        action: ActionDefinition,
    ) -> None:
        envelope = meta.get_envelope(req, res)
        outcome = invoke(meta, action, envelope)
        await normalize(self.settings, resource, action, envelope, outcome)

    def wireup_resource(
        self,
        resource: ResourceDefinition,
        base_path: Optional[str],
        resources: Mapping[str, ResourceDefinition],
    ) -> Dict[str, Any]:
        meta: Dict[str, Any] = {"routes": {}}
        for action_name, action in resource.actions.items():
            self.wireup_action(resource, action_name, action, meta, resources)
        static = resource.static
        if static is not None:
            # After the actions: a mount does not fall through to later routes.
            directory = build_path([base_path or "", static.path])
            options = dict(static.options)
            options["path"] = directory
            self.transport.static("/" + resource.name, options)
            meta["path"] = {"url": "/" + resource.name, "directory": directory}
        return meta

    def wireup_action(
        self,
        resource: ResourceDefinition,
        action_name: str,
        action: ActionDefinition,
        metadata: Dict[str, Any],
        resources: Mapping[str, ResourceDefinition],
    ) -> ActionMetadata:
        meta = get_action_metadata(
            self.settings, self.metrics, self.gate, resource, action_name, action, metadata, resources
        )
        logger.debug(
            "mapping resource '%s' action '%s' to %s %s",
            resource.name,
            action_name,
            action.method,
            metadata["routes"][action_name]["url"],
        )
        gate = self.gate

        async def handle(req: InboundRequest, res: ResponseChannel) -> None:
            req.state["metric_key"] = meta.metric_key
            req.state["resource"] = resource.name
            req.state["action"] = action_name
            req.state["check_permission"] = meta.get_permission_check(req)
            bind(resource=resource.name, action=action_name, alias=meta.alias)

            timer = meta.get_timer()
            res.on_finish(lambda: timer.record(name="HTTP_API_DURATION"))

            if gate is None:
                await self.respond(meta, req, res, resource, action)
                return

            meta.auth_attempted()
            granted = await gate.check_permission(req.user, req.context, meta.alias)
            if granted:
                meta.auth_granted()
                logger.debug(
                    "HTTP activation of action %s (%s %s) for %s granted",
                    meta.alias,
                    action.method,
                    req.path,
                    describe_user(req.user),
                    extra={"granted": True},
                )
                await self.respond(meta, req, res, resource, action)
            else:
                meta.auth_rejected()
                logger.debug(
                    "user %s was denied HTTP activation of action %s (%s %s)",
                    describe_user(req.user),
                    meta.alias,
                    action.method,
                    req.path,
                    extra={"granted": False},
                )
                if not res.headers_sent:
                    res.send(PlainTextResponse(DENIED_MESSAGE, status_code=403))

        self.transport.route(meta.url, action.method, handle)
        return meta


__all__ = [
    "DENIED_MESSAGE",
    "ErrorStrategy",
    "Sync",
    "Deferred",
    "Empty",
    "HandlerResult",
    "ActionMetadata",
    "get_action_metadata",
    "invoke",
    "normalize",
    "HttpAdapter",
]
