from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .base import Operation
from ..executors import Executor
from ..types import ActionResult, HostConfig

logger = logging.getLogger(__name__)


@dataclass
class Ufw:
    executable: str = "ufw"

    def added_rules(self, executor: Executor) -> list[str]:
        result = executor.run([self.executable, "show", "added"], mutable=False)
        return [line.strip() for line in result.stdout.splitlines() if line.strip().startswith("ufw ")]

    def apply_rule(self, executor: Executor, rule: str, target: str) -> None:
        executor.run([self.executable, rule, target])

    def delete_rule(self, executor: Executor, rule: str, target: str) -> None:
        executor.run([self.executable, "delete", rule, target])

    def reload(self, executor: Executor) -> None:
        executor.run([self.executable, "reload"])


class UfwOperation(Operation):
    """Allow or deny traffic for a port or application profile with ufw.

    The rule counts as changed when the ``ufw show added`` listing differs
    before and after, so re-applying an existing rule is a no-op.
    """

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.rule = str(spec.get("rule", "allow"))
        if self.rule not in {"allow", "deny", "reject", "limit"}:
            raise ValueError("ufw rule must be 'allow', 'deny', 'reject' or 'limit'")
        target = spec.get("port") or spec.get("name")
        if target is None or str(target).strip() == "":
            raise ValueError("ufw operation requires a port or name")
        self.target = str(target).strip()
        self.proto = spec.get("proto")
        if self.proto is not None and "/" not in self.target:
            self.target = f"{self.target}/{self.proto}"
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("ufw state must be 'present' or 'absent'")
        self.ufw = Ufw()

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        before = self.ufw.added_rules(executor)
        expected = f"ufw {self.rule} {self.target}"
        present = expected in before
        if self.state == "present" and present:
            return self._result(host, False, "noop")
        if self.state == "absent" and not present:
            return self._result(host, False, "noop")

        if executor.dry_run:
            detail = "would-add" if self.state == "present" else "would-delete"
            return self._result(host, True, detail)

        if self.state == "present":
            self.ufw.apply_rule(executor, self.rule, self.target)
        else:
            self.ufw.delete_rule(executor, self.rule, self.target)
        after = self.ufw.added_rules(executor)
        changed = after != before
        logger.debug("ufw %s %s on %s changed=%s", self.rule, self.target, host.name, changed)
        detail = ("added" if self.state == "present" else "deleted") if changed else "noop"
        return self._result(host, changed, detail)

    def _result(self, host: HostConfig, changed: bool, detail: str) -> ActionResult:
        return ActionResult(
            host=host.name, action="ufw", changed=changed, details=detail, resource=self.target
        )
