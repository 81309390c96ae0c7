# FILE: resthost/config.py
from __future__ import annotations

import logging
import os
from typing import Any, Callable, Dict, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict


_log = logging.getLogger(__name__)

DEFAULT_API_PREFIX = "api"


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------

_TRUE = frozenset(("1", "true", "yes", "on"))


def _as_bool(raw: str) -> Optional[bool]:
    return raw.strip().lower() in _TRUE if raw.strip() else None


def _as_str(raw: str) -> Optional[str]:
    # "" is meaningful here (RESTHOST_API_PREFIX="" disables the prefix).
    return raw.strip()


def _as_port(raw: str) -> Optional[int]:
    try:
        port = int(raw)
    except ValueError:
        _log.warning("ignoring non-integer port %r", raw)
        return None
    if not 0 <= port <= 65535:
        _log.warning("ignoring out of range port %d", port)
        return None
    return port


# Settings field -> (environment variable, parser). A parser returning None
# leaves the lower layer in place.
_ENV_FIELDS: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "api_prefix": ("RESTHOST_API_PREFIX", _as_str),
    "url_prefix": ("RESTHOST_URL_PREFIX", _as_str),
    "resources": ("RESTHOST_RESOURCES", _as_str),
    "static": ("RESTHOST_STATIC", _as_str),
    "no_options": ("RESTHOST_NO_OPTIONS", _as_bool),
    "handle_route_errors": ("RESTHOST_HANDLE_ROUTE_ERRORS", _as_bool),
    "metrics_prefix": ("RESTHOST_METRICS_PREFIX", _as_str),
    "log_level": ("RESTHOST_LOG_LEVEL", _as_str),
    "host": ("RESTHOST_HOST", _as_str),
    "port": ("RESTHOST_PORT", _as_port),
}


def _from_env() -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for field_name, (var, parse) in _ENV_FIELDS.items():
        raw = os.environ.get(var)
        if raw is None:
            continue
        value = parse(raw)
        if value is not None:
            values[field_name] = value
    return values


def _from_yaml(path: str) -> Dict[str, Any]:
    """
    Top-level mapping of a YAML file; {} when the path is unset, missing or
    does not hold a mapping. Values are left for pydantic to validate.
    """
    if not path:
        return {}
    if not os.path.isfile(path):
        _log.warning("config file %s not found; skipping", path)
        return {}
    with open(path, "r", encoding="utf-8") as fh:
        doc = yaml.safe_load(fh)
    if not isinstance(doc, dict):
        _log.warning("config file %s is not a mapping; skipping", path)
        return {}
    return {str(k): v for k, v in doc.items()}


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # --- Identity ---------------------------------------------------------

    app_name: str = "resthost"
    version: str = "0.1.0"

    # --- Routing ----------------------------------------------------------

    # None means "use the default api prefix"; "" disables the prefix.
    api_prefix: Optional[str] = None
    url_prefix: str = ""
    # fn(resource_name, action_name, action, resources) -> url
    url_strategy: Optional[Callable[..., str]] = None
    # Directory holding <name>/resource.py modules.
    resources: Optional[str] = None
    # App-level static directory served from "/".
    static: Optional[str] = None
    # Disable the OPTIONS metadata endpoint.
    no_options: bool = False

    # --- Dispatch ---------------------------------------------------------

    # True: handler exceptions are rendered by the envelope.
    # False: handler exceptions propagate to the transport.
    handle_route_errors: bool = False

    # --- Metrics / logging ------------------------------------------------

    metrics_prefix: str = "resthost"
    metrics_endpoint: Optional[str] = "/metrics"
    log_level: str = "INFO"
    log_requests: bool = True

    # --- Server -----------------------------------------------------------

    host: str = "127.0.0.1"
    port: int = 8800

    @property
    def effective_api_prefix(self) -> str:
        return DEFAULT_API_PREFIX if self.api_prefix is None else self.api_prefix


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def load_settings(**overrides: Any) -> Settings:
    """
    Build Settings from, lowest priority first: in-code defaults, the YAML
    file named by RESTHOST_CONFIG_PATH, RESTHOST_* environment variables and
    keyword overrides (CLI flags, embedding code, tests).
    """
    merged: Dict[str, Any] = _from_yaml(os.environ.get("RESTHOST_CONFIG_PATH", "").strip())
    merged.update(_from_env())
    merged.update(overrides)
    return Settings(**merged)


__all__ = ["DEFAULT_API_PREFIX", "Settings", "load_settings"]
