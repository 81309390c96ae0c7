# resthost/tests/test_auth.py
import asyncio
from types import SimpleNamespace

from conftest import FailingProvider, StaticProvider
from resthost.auth import AuthorizationGate, build_gate, describe_user
from resthost.metrics import Metrics

CHECKS = (["authorization", "checks"], "AUTHORIZATION_CHECKS")
ERRORS = (["authorization", "errors"], "HTTP_AUTHORIZATION_ERRORS")
DURATION = (["authorization", "duration"], "HTTP_AUTHORIZATION_DURATION")


def _check(gate, user=None, context=None, identifier="widgets.list"):
    return asyncio.run(gate.check_permission(user, context or {}, identifier))


def test_granted_decision():
    metrics = Metrics()
    provider = StaticProvider(True)
    gate = AuthorizationGate(provider, metrics)

    assert _check(gate, user={"name": "ann"}, context={"tenant": "t1"}) is True
    assert provider.calls == [({"name": "ann"}, "widgets.list", {"tenant": "t1"})]
    assert metrics.count(*CHECKS) == 1
    assert metrics.observations(*DURATION) == 1
    assert metrics.count(*ERRORS) == 0


def test_denied_decision():
    metrics = Metrics()
    gate = AuthorizationGate(StaticProvider(False), metrics)
    assert _check(gate) is False
    assert metrics.count(*CHECKS) == 1
    assert metrics.observations(*DURATION) == 1
    assert metrics.count(*ERRORS) == 0


def test_provider_error_is_a_denial(caplog):
    metrics = Metrics()
    provider = FailingProvider()
    gate = AuthorizationGate(provider, metrics)

    with caplog.at_level("ERROR", logger="resthost.auth"):
        assert _check(gate) is False

    assert provider.calls == 1
    assert metrics.count(*CHECKS) == 1
    assert metrics.count(*ERRORS) == 1
    assert metrics.observations(*DURATION) == 1
    assert any("error during check permissions" in r.getMessage() for r in caplog.records)


def test_synchronous_provider_raise_is_a_denial():
    class Broken:
        def check_permission(self, user, action, context):
            raise KeyError("role")

    metrics = Metrics()
    assert _check(AuthorizationGate(Broken(), metrics)) is False
    assert metrics.count(*ERRORS) == 1


def test_plain_bool_provider():
    class Sync:
        def check_permission(self, user, action, context):
            return action == "widgets.list"

    gate = AuthorizationGate(Sync(), Metrics())
    assert _check(gate, identifier="widgets.list") is True
    assert _check(gate, identifier="widgets.delete") is False


def test_truthy_answers_are_normalized():
    class Truthy:
        async def check_permission(self, user, action, context):
            return 1

    assert _check(AuthorizationGate(Truthy(), Metrics())) is True


def test_build_gate():
    assert build_gate(None, Metrics()) is None
    assert isinstance(build_gate(StaticProvider(True), Metrics()), AuthorizationGate)


def test_describe_user():
    assert describe_user(None) == "anonymous"
    assert describe_user({"name": "ann", "id": 1}) == "ann"
    assert describe_user({"username": "bob"}) == "bob"
    assert describe_user(SimpleNamespace(id=7)) == "7"
    assert describe_user({"roles": ["admin"]}) == '{"roles": ["admin"]}'
