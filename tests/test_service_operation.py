import pytest

from webstack_automation.operations.service import ServiceOperation
from webstack_automation.types import HostConfig


class FakeSystemCtl:
    def __init__(self, enabled: bool = False, active: bool = False, available: bool = True):
        self.enabled = enabled
        self.active = active
        self._available = available
        self.actions: list[str] = []

    def available(self, executor) -> bool:  # noqa: ARG002
        return self._available

    def is_enabled(self, executor, service: str) -> bool:  # noqa: ARG002
        return self.enabled

    def is_active(self, executor, service: str) -> bool:  # noqa: ARG002
        return self.active

    def enable(self, executor, service: str) -> None:  # noqa: ARG002
        self.enabled = True
        self.actions.append("enable")

    def disable(self, executor, service: str) -> None:  # noqa: ARG002
        self.enabled = False
        self.actions.append("disable")

    def start(self, executor, service: str) -> None:  # noqa: ARG002
        self.active = True
        self.actions.append("start")

    def stop(self, executor, service: str) -> None:  # noqa: ARG002
        self.active = False
        self.actions.append("stop")

    def restart(self, executor, service: str) -> None:  # noqa: ARG002
        self.actions.append("restart")


class DummyExecutor:
    def __init__(self, dry_run: bool = False):
        self.host = HostConfig(name="local")
        self.dry_run = dry_run


def test_service_enable_and_start():
    op = ServiceOperation({"name": "nginx", "enabled": True, "state": "started"})
    fake = FakeSystemCtl(enabled=False, active=False)
    op.systemctl = fake
    result = op.apply(HostConfig("local"), DummyExecutor())

    assert result.changed is True
    assert "enabled" in result.details
    assert "started" in result.details
    assert result.resource == "nginx"
    assert fake.actions == ["enable", "start"]


def test_service_restart_only():
    op = ServiceOperation({"name": "mysql", "restart": True})
    fake = FakeSystemCtl(enabled=True, active=True)
    op.systemctl = fake
    result = op.apply(HostConfig("local"), DummyExecutor())

    assert result.changed is True
    assert result.details == "restarted"
    assert fake.actions == ["restart"]


def test_service_no_changes_returns_noop():
    op = ServiceOperation({"name": "nginx", "enabled": "yes", "state": "running"})
    fake = FakeSystemCtl(enabled=True, active=True)
    op.systemctl = fake
    result = op.apply(HostConfig("local"), DummyExecutor())

    assert result.changed is False
    assert result.details == "noop"


def test_service_dry_run_reports_without_acting():
    op = ServiceOperation({"name": "nginx", "enabled": True, "state": "started"})
    fake = FakeSystemCtl(enabled=False, active=False)
    op.systemctl = fake
    result = op.apply(HostConfig("local"), DummyExecutor(dry_run=True))

    assert result.changed is True
    assert fake.actions == []


def test_service_requires_systemctl():
    op = ServiceOperation({"name": "nginx", "state": "started"})
    op.systemctl = FakeSystemCtl(available=False)

    with pytest.raises(RuntimeError):
        op.apply(HostConfig("local"), DummyExecutor())


def test_service_rejects_unknown_state():
    with pytest.raises(ValueError):
        ServiceOperation({"name": "nginx", "state": "sleeping"})
