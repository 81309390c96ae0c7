# FILE: resthost/routes.py
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Pattern, Sequence, Union

from .config import Settings
from .resources import ActionDefinition, ResourceDefinition


# ---------------------------------------------------------------------------
# URL rules (resolved once per action at wiring time)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PatternUrl:
    """The action url is a compiled pattern; only the prefix is applied."""

    pattern: Pattern[str]


@dataclass(frozen=True)
class StrategyUrl:
    """A configured url_strategy computes the url."""

    strategy: Callable[..., str]


@dataclass(frozen=True)
class DefaultUrl:
    """prefix + resource url_prefix + resource name (unless present) + action url."""


UrlRule = Union[PatternUrl, StrategyUrl, DefaultUrl]


def resolve_url_rule(settings: Settings, action: ActionDefinition) -> UrlRule:
    if isinstance(action.url, re.Pattern):
        return PatternUrl(action.url)
    if settings.url_strategy is not None:
        return StrategyUrl(settings.url_strategy)
    return DefaultUrl()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def build_url(*segments: Optional[str]) -> str:
    """
    Join url segments the way the transport expects them.

    One leading and one trailing slash are stripped from every segment,
    empty segments are dropped and the result always starts with "/":

        build_url("api", "", "widgets", "/:id") -> "/api/widgets/:id"
        build_url("", "")                       -> "/"
    """
    cleaned = []
    for segment in segments:
        s = segment or ""
        if s.startswith("/"):
            s = s[1:]
        if s.endswith("/"):
            s = s[:-1]
        if s:
            cleaned.append(s)
    return "/" + "/".join(cleaned)


def prefix_pattern(prefix: str, pattern: Pattern[str]) -> Pattern[str]:
    """
    Anchor ``pattern`` behind the literal url ``prefix``.

        prefix_pattern("/api", re.compile(r"^/widgets/(?P<id>\\d+)$"))
          -> re.compile(r"^/api/widgets/(?P<id>\\d+)$")
    """
    source = pattern.pattern
    if source.startswith("^"):
        source = source[1:]
    if source.startswith("\\/"):
        source = source[2:]
    elif source.startswith("/"):
        source = source[1:]
    head = prefix.rstrip("/")
    return re.compile("^" + re.escape(head) + "/" + source, pattern.flags)


def resolve_api_prefix(settings: Settings, resource: ResourceDefinition) -> str:
    # Resource specific override beats the settings value (default "api").
    if resource.api_prefix is not None:
        return resource.api_prefix
    return settings.effective_api_prefix


def has_prefix(settings: Settings, url: str, api_prefix: str) -> bool:
    """True when ``url`` already starts with the url + api prefix."""
    candidates = {
        build_url(settings.url_prefix, api_prefix),
        build_url(api_prefix),
    }
    for c in candidates:
        if c == "/":
            continue
        if url == c or url.startswith(c + "/"):
            return True
    return False


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def build_action_url(
    settings: Settings,
    resource_name: str,
    action_name: str,
    action: ActionDefinition,
    resource: ResourceDefinition,
    resources: Mapping[str, ResourceDefinition],
    rule: Optional[UrlRule] = None,
) -> Union[str, Pattern[str]]:
    prefix = resolve_api_prefix(settings, resource)
    rule = rule or resolve_url_rule(settings, action)

    if isinstance(rule, PatternUrl):
        return prefix_pattern(build_url(settings.url_prefix, prefix), rule.pattern)

    if isinstance(rule, StrategyUrl):
        url = build_url(rule.strategy(resource_name, action_name, action, resources))
        if has_prefix(settings, url, prefix):
            prefix = ""
        return build_url(prefix, url)

    action_url = action.url or ""
    # Only "widgets/..." or "/widgets/..." suppress the resource segment;
    # a later occurrence of the name does not.
    resource_index = action_url.find(resource_name)
    resource_segment = "" if resource_index in (0, 1) else resource_name
    return build_url(prefix, resource.url_prefix or "", resource_segment, action_url)


def build_action_alias(resource_name: str, action_name: str) -> str:
    return ".".join((resource_name, action_name))


def build_path(path_spec: Union[str, Sequence[str], None]) -> str:
    """
    Resolve a static asset path.

    A sequence is joined (and normalized); when its first segment starts with
    "./" the result keeps that marker. A leading "~" expands to the home
    directory.
    """
    has_local_prefix = False
    spec: Any = path_spec or ""
    if isinstance(spec, (list, tuple)):
        parts = [str(p) for p in spec if p]
        has_local_prefix = bool(parts) and parts[0].startswith("./")
        spec = os.path.normpath(os.path.join(*parts)) if parts else ""
    if spec.startswith("~"):
        spec = os.path.expanduser("~") + spec[1:]
    return "./" + spec if has_local_prefix else spec


__all__ = [
    "PatternUrl",
    "StrategyUrl",
    "DefaultUrl",
    "UrlRule",
    "resolve_url_rule",
    "resolve_api_prefix",
    "build_url",
    "prefix_pattern",
    "has_prefix",
    "build_action_url",
    "build_action_alias",
    "build_path",
]
