import pytest

from webstack_automation.executors import CommandResult, Executor
from webstack_automation.operations.firewall import UfwOperation
from webstack_automation.types import HostConfig


class UfwHost(Executor):
    def __init__(self, rules=None, dry_run: bool = False):
        super().__init__(HostConfig(name="web1"), dry_run=dry_run)
        self.rules: list[str] = list(rules or [])
        self.commands: list[list[str]] = []

    def _execute(self, command, **kwargs):  # noqa: ARG002
        self.commands.append(command)
        if command[1:] == ["show", "added"]:
            listing = "\n".join(self.rules) if self.rules else "(None)"
            return CommandResult(command, f"Added user rules (see 'ufw status' for running firewall):\n{listing}\n", "", 0)
        if command[1] == "delete":
            self.rules.remove(f"ufw {command[2]} {command[3]}")
        else:
            self.rules.append(f"ufw {command[1]} {command[2]}")
        return CommandResult(command, "Rule added", "", 0)


def test_allow_adds_missing_rule():
    host = UfwHost()

    result = UfwOperation({"rule": "allow", "name": "443"}).apply(HostConfig("web1"), host)

    assert result.changed is True
    assert result.resource == "443"
    assert host.rules == ["ufw allow 443"]


def test_allow_existing_rule_is_noop():
    host = UfwHost(rules=["ufw allow 22"])

    result = UfwOperation({"rule": "allow", "name": "22"}).apply(HostConfig("web1"), host)

    assert result.changed is False
    assert ["ufw", "allow", "22"] not in host.commands


def test_absent_deletes_rule():
    host = UfwHost(rules=["ufw allow 80"])

    result = UfwOperation({"rule": "allow", "port": 80, "state": "absent"}).apply(HostConfig("web1"), host)

    assert result.changed is True
    assert host.rules == []


def test_dry_run_reports_pending_rule():
    host = UfwHost(dry_run=True)

    result = UfwOperation({"name": "80"}).apply(HostConfig("web1"), host)

    assert result.changed is True
    assert result.details == "would-add"
    assert host.rules == []


def test_proto_is_appended_to_port():
    op = UfwOperation({"port": "8080", "proto": "tcp"})

    assert op.target == "8080/tcp"


def test_invalid_rule_rejected():
    with pytest.raises(ValueError):
        UfwOperation({"rule": "open", "name": "80"})
    with pytest.raises(ValueError):
        UfwOperation({"rule": "allow"})
