# FILE: resthost/resources.py
from __future__ import annotations

import dataclasses
import importlib.util
import logging
import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Pattern, Sequence, Union

from .errors import ResourceError

logger = logging.getLogger(__name__)

HTTP_METHODS = frozenset({"get", "post", "put", "patch", "delete", "head", "options"})

UrlSpec = Union[str, Pattern[str], None]


def _pick(m: Mapping[str, Any], *names: str, default: Any = None) -> Any:
    for n in names:
        if n in m:
            return m[n]
    return default


@dataclass(frozen=True)
class StaticSpec:
    """
    Static asset mount for a resource.

    ``path`` is relative to the resource's base path (or absolute, or
    ``~``-prefixed). ``options`` are passed through to Starlette's
    StaticFiles (``html``, ``follow_symlink``).
    """

    path: str
    options: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def coerce(cls, value: Any) -> Optional["StaticSpec"]:
        if value is None or isinstance(value, StaticSpec):
            return value
        if isinstance(value, str):
            return cls(path=value)
        if isinstance(value, Mapping):
            if "path" not in value:
                raise ResourceError("static spec mapping requires a 'path'")
            opts = {k: v for k, v in value.items() if k != "path"}
            return cls(path=str(value["path"]), options=MappingProxyType(opts))
        raise ResourceError(f"unsupported static spec: {value!r}")


@dataclass(frozen=True)
class ActionDefinition:
    method: str
    handle: Callable[..., Any]
    url: UrlSpec = ""

    def __post_init__(self) -> None:
        method = (self.method or "").lower()
        if method not in HTTP_METHODS:
            raise ResourceError(f"unsupported http method {self.method!r}")
        if not callable(self.handle):
            raise ResourceError("action handle must be callable")
        object.__setattr__(self, "method", method)

    @classmethod
    def from_mapping(cls, m: Mapping[str, Any]) -> "ActionDefinition":
        handle = _pick(m, "handle", "handler")
        if handle is None:
            raise ResourceError("action definition requires a 'handle'")
        return cls(
            method=str(_pick(m, "method", default="get")),
            handle=handle,
            url=_pick(m, "url", default=""),
        )

    @classmethod
    def coerce(cls, value: Any) -> "ActionDefinition":
        if isinstance(value, ActionDefinition):
            return value
        if isinstance(value, Mapping):
            return cls.from_mapping(value)
        raise ResourceError(f"unsupported action definition: {value!r}")


@dataclass(frozen=True)
class ResourceDefinition:
    """
    A named collection of actions exposed under one URL namespace.

    Accepts the declarative mapping form too:

        ResourceDefinition.from_mapping({
            "name": "widgets",
            "apiPrefix": "v2",
            "static": "./public",
            "actions": {
                "list": {"method": "get", "url": "", "handle": list_widgets},
            },
        })
    """

    name: str
    actions: Mapping[str, ActionDefinition]
    api_prefix: Optional[str] = None
    url_prefix: Optional[str] = None
    static: Optional[StaticSpec] = None
    # Directory the definition was loaded from; static paths resolve against it.
    base_path: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ResourceError("resource definition requires a name")
        actions = {
            str(k): ActionDefinition.coerce(v) for k, v in (self.actions or {}).items()
        }
        object.__setattr__(self, "actions", MappingProxyType(actions))
        object.__setattr__(self, "static", StaticSpec.coerce(self.static))

    @classmethod
    def from_mapping(cls, m: Mapping[str, Any]) -> "ResourceDefinition":
        return cls(
            name=str(_pick(m, "name", default="")),
            actions=_pick(m, "actions", default={}) or {},
            api_prefix=_pick(m, "apiPrefix", "api_prefix"),
            url_prefix=_pick(m, "urlPrefix", "url_prefix"),
            static=_pick(m, "static", "resources"),
            base_path=_pick(m, "base_path", "basePath"),
        )

    @classmethod
    def coerce(cls, value: Any) -> "ResourceDefinition":
        if isinstance(value, ResourceDefinition):
            return value
        if isinstance(value, Mapping):
            return cls.from_mapping(value)
        raise ResourceError(f"unsupported resource definition: {value!r}")


def load_resources(directory: str, host: Any = None) -> List[ResourceDefinition]:
    """
    Import every ``<directory>/<name>/resource.py`` and call its
    ``resource(host)`` factory.

    Modules are loaded in sorted directory order. A module without a
    ``resource`` callable is skipped with a warning.
    """
    loaded: List[ResourceDefinition] = []
    if not directory or not os.path.isdir(directory):
        logger.warning("resource directory %s not found; no resources loaded", directory)
        return loaded

    for entry in sorted(os.listdir(directory)):
        base_path = os.path.join(directory, entry)
        module_path = os.path.join(base_path, "resource.py")
        if not os.path.isfile(module_path):
            continue
        spec = importlib.util.spec_from_file_location(f"resthost_resource_{entry}", module_path)
        if spec is None or spec.loader is None:
            continue
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        factory = getattr(module, "resource", None)
        if not callable(factory):
            logger.warning("%s has no resource() factory; skipped", module_path)
            continue
        definition = ResourceDefinition.coerce(factory(host))
        if definition.base_path is None:
            definition = dataclasses.replace(definition, base_path=base_path)
        loaded.append(definition)
        logger.debug("loaded resource %s from %s", definition.name, module_path)
    return loaded


def index_resources(resources: Sequence[ResourceDefinition]) -> Dict[str, ResourceDefinition]:
    out: Dict[str, ResourceDefinition] = {}
    for r in resources:
        if r.name in out:
            raise ResourceError(f"duplicate resource name {r.name!r}")
        out[r.name] = r
    return out


__all__ = [
    "HTTP_METHODS",
    "StaticSpec",
    "ActionDefinition",
    "ResourceDefinition",
    "load_resources",
    "index_resources",
]
