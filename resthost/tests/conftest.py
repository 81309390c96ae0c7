# resthost/tests/conftest.py
from typing import Any, Dict, List

import pytest
from fastapi.testclient import TestClient

from resthost.config import Settings
from resthost.host import Host
from resthost.metrics import Metrics


class StaticProvider:
    """Authorization provider answering every check with a fixed decision."""

    def __init__(self, answer: bool):
        self.answer = answer
        self.calls: List[tuple] = []

    async def check_permission(self, user, action, context):
        self.calls.append((user, action, context))
        return self.answer


class FailingProvider:
    def __init__(self):
        self.calls = 0

    async def check_permission(self, user, action, context):
        self.calls += 1
        raise RuntimeError("provider down")


class Recorder:
    """Handler factory counting invocations."""

    def __init__(self, result: Any = None):
        self.result = result
        self.calls = 0
        self.envelopes: List[Any] = []

    def __call__(self, envelope):
        self.calls += 1
        self.envelopes.append(envelope)
        return self.result


def route_count(metrics: Metrics, resource_key: str, *path: str, name: str) -> float:
    return metrics.count([resource_key, "http", *path], name)


@pytest.fixture
def make_host():
    def _make(resources, *, auth=None, **settings: Any):
        opts: Dict[str, Any] = {"log_requests": False}
        opts.update(settings)
        host = Host(Settings(**opts), auth=auth, resources=resources)
        host.start()
        return host

    return _make


@pytest.fixture
def client_for():
    def _client(host: Host, raise_server_exceptions: bool = True) -> TestClient:
        return TestClient(host.app, raise_server_exceptions=raise_server_exceptions)

    return _client
