# FILE: resthost/auth.py
from __future__ import annotations

import inspect
import json
import logging
from typing import Any, Awaitable, Mapping, Optional, Protocol, Union

from .metrics import Metrics

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Provider contract
# ---------------------------------------------------------------------------


class AuthProvider(Protocol):
    """
    External authorization provider.

    ``check_permission`` answers whether ``user`` may activate the action
    identified by ``action`` (the "resource.action" alias). It may be a
    coroutine function or return a plain bool.
    """

    def check_permission(
        self, user: Any, action: str, context: Any
    ) -> Union[Awaitable[bool], bool]:
        ...


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def describe_user(user: Any) -> str:
    """Short printable identity for log lines: name, username, id, else JSON."""
    if user is None:
        return "anonymous"
    for attr in ("name", "username", "id"):
        if isinstance(user, Mapping):
            v = user.get(attr)
        else:
            v = getattr(user, attr, None)
        if v:
            return str(v)
    try:
        return json.dumps(user, default=str, sort_keys=True)
    except (TypeError, ValueError):
        return repr(user)


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class AuthorizationGate:
    """
    Fail-closed wrapper around an AuthProvider.

    Contract:
      - every call records AUTHORIZATION_CHECKS and starts a duration timer;
      - a granted/denied answer records HTTP_AUTHORIZATION_DURATION and is
        returned as a bool;
      - a provider failure (raise or failed awaitable) is logged, records
        HTTP_AUTHORIZATION_ERRORS and the duration, and yields False.

    Exceptions from the provider never escape ``check_permission``.
    """

    def __init__(self, provider: AuthProvider, metrics: Metrics):
        self.provider = provider
        self._metrics = metrics

    async def check_permission(self, user: Any, context: Any, identifier: str) -> bool:
        logger.debug(
            "checking %s's permissions for %s",
            describe_user(user),
            identifier,
            extra={"alias": identifier},
        )
        self._metrics.authorization_checks.record(1, name="AUTHORIZATION_CHECKS")
        timer = self._metrics.authorization_timer()
        try:
            granted = self.provider.check_permission(user, identifier, context)
            if inspect.isawaitable(granted):
                granted = await granted
        except Exception:
            logger.exception(
                "error during check permissions for %s", identifier, extra={"alias": identifier}
            )
            self._metrics.authorization_errors.record(1, name="HTTP_AUTHORIZATION_ERRORS")
            timer.record(name="HTTP_AUTHORIZATION_DURATION")
            return False
        timer.record(name="HTTP_AUTHORIZATION_DURATION")
        return bool(granted)


def build_gate(provider: Optional[AuthProvider], metrics: Metrics) -> Optional[AuthorizationGate]:
    return AuthorizationGate(provider, metrics) if provider is not None else None


__all__ = ["AuthProvider", "AuthorizationGate", "build_gate", "describe_user"]
