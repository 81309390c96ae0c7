# FILE: resthost/errors.py
from __future__ import annotations


class ResthostError(Exception):
    """Base class for host wiring and lifecycle failures."""


class ResourceError(ResthostError):
    """
    Raised at wiring time when a resource definition cannot be mapped onto
    the transport (missing handler, unsupported method, duplicate route).
    """


class LifecycleError(ResthostError):
    """Raised when start/stop are called out of order."""


__all__ = ["ResthostError", "ResourceError", "LifecycleError"]
