from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .base import Operation
from ..executors import Executor
from ..types import ActionResult, HostConfig

logger = logging.getLogger(__name__)

_STATE_ALIASES = {"started": "running", "running": "running", "stopped": "stopped"}


@dataclass
class SystemCtl:
    """systemd unit queries and transitions through ``systemctl``."""

    executable: str = "systemctl"

    def available(self, executor: Executor) -> bool:
        return self._query(executor, "--version")

    def is_enabled(self, executor: Executor, service: str) -> bool:
        return self._query(executor, "is-enabled", service)

    def is_active(self, executor: Executor, service: str) -> bool:
        return self._query(executor, "is-active", service)

    def enable(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "enable", service])

    def disable(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "disable", service])

    def start(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "start", service])

    def stop(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "stop", service])

    def restart(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "restart", service])

    def _query(self, executor: Executor, *args: str) -> bool:
        result = executor.run([self.executable, *args], check=False, mutable=False)
        return result.returncode == 0


class ServiceOperation(Operation):
    """Keep a systemd service enabled or disabled, running or stopped.

    ``state`` accepts ``started`` as an alias of ``running``. ``restart``
    restarts the unit unconditionally after the other transitions.
    """

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        if not spec.get("name"):
            raise ValueError("service operation requires a name")
        self.name = str(spec["name"])
        self.enabled = self._coerce_bool(spec.get("enabled"))
        state = spec.get("state")
        if state is not None and state not in _STATE_ALIASES:
            raise ValueError("service state must be 'running', 'started' or 'stopped'")
        self.state = _STATE_ALIASES[state] if state is not None else None
        self.restart = bool(self._coerce_bool(spec.get("restart", False)))
        self.systemctl = SystemCtl()

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        if not self.systemctl.available(executor):
            raise RuntimeError(f"systemctl is not available on {host.name}")

        transitions = self._plan(executor)
        for verb, _ in transitions:
            logger.debug("service %s on %s: %s", self.name, host.name, verb)
            if not executor.dry_run:
                getattr(self.systemctl, verb)(executor, self.name)

        labels = [label for _, label in transitions]
        return ActionResult(
            host=host.name,
            action="service",
            changed=bool(labels),
            details=", ".join(labels) if labels else "noop",
            resource=self.name,
        )

    def _plan(self, executor: Executor) -> list[tuple[str, str]]:
        """Return the (systemctl verb, result label) pairs needed to converge."""

        plan: list[tuple[str, str]] = []
        if self.enabled is not None:
            enabled = self.systemctl.is_enabled(executor, self.name)
            if self.enabled and not enabled:
                plan.append(("enable", "enabled"))
            elif not self.enabled and enabled:
                plan.append(("disable", "disabled"))
        if self.state is not None:
            active = self.systemctl.is_active(executor, self.name)
            if self.state == "running" and not active:
                plan.append(("start", "started"))
            elif self.state == "stopped" and active:
                plan.append(("stop", "stopped"))
        if self.restart:
            plan.append(("restart", "restarted"))
        return plan
