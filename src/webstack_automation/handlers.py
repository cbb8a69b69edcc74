from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Sequence

from paramiko.ssh_exception import SSHException

from .executors import Executor
from .operations.firewall import Ufw
from .types import ActionResult, Handler, HostConfig

logger = logging.getLogger(__name__)

BOOT_ID = Path("/proc/sys/kernel/random/boot_id")
DEFAULT_ALIVE_CHECK = ("uptime",)
HANDLER_ORDER = (Handler.REBOOT, Handler.RELOAD_FIREWALL)

_CONNECTION_ERRORS = (ConnectionError, SSHException, OSError, EOFError)


class HandlerError(RuntimeError):
    """Raised when a triggered handler cannot complete."""


@dataclass
class HandlerFlags:
    """Which handlers the steps of one host run have triggered."""

    triggered: set[Handler] = field(default_factory=set)

    def notify(self, handler: Handler) -> None:
        self.triggered.add(handler)

    def is_set(self, handler: Handler) -> bool:
        return handler in self.triggered

    def pending(self) -> list[Handler]:
        return [handler for handler in HANDLER_ORDER if handler in self.triggered]


class HandlerRunner:
    def __init__(
        self,
        *,
        reboot_timeout: float = 600,
        alive_command: Sequence[str] = DEFAULT_ALIVE_CHECK,
        poll_interval: float = 5,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.reboot_timeout = reboot_timeout
        self.alive_command = list(alive_command)
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock
        self.ufw = Ufw()

    def run(self, flags: HandlerFlags, host: HostConfig, executor: Executor) -> list[ActionResult]:
        results: list[ActionResult] = []
        for handler in flags.pending():
            logger.info("host=%s running handler %s", host.name, handler.value)
            if executor.dry_run:
                results.append(
                    ActionResult(
                        host=host.name,
                        action=handler.value,
                        changed=True,
                        details="skipped (dry-run)",
                        resource="handler",
                    )
                )
                continue
            if handler is Handler.REBOOT:
                results.append(self.reboot(host, executor))
            else:
                results.append(self.reload_firewall(host, executor))
        return results

    def reboot(self, host: HostConfig, executor: Executor) -> ActionResult:
        before = self._boot_id(executor)
        started = self._clock()
        try:
            executor.run(["shutdown", "-r", "now"], check=False)
        except _CONNECTION_ERRORS:
            logger.debug("host=%s dropped the connection while rebooting", host.name)

        deadline = started + self.reboot_timeout
        while self._clock() < deadline:
            self._sleep(self.poll_interval)
            if self._host_is_back(executor, before):
                elapsed = self._clock() - started
                return ActionResult(
                    host=host.name,
                    action=Handler.REBOOT.value,
                    changed=True,
                    details=f"rebooted in {elapsed:.0f}s",
                    resource="handler",
                )
        raise HandlerError(
            f"{host.name} did not come back within {self.reboot_timeout:.0f}s after reboot"
        )

    def reload_firewall(self, host: HostConfig, executor: Executor) -> ActionResult:
        try:
            self.ufw.reload(executor)
        except subprocess.CalledProcessError as exc:
            raise HandlerError(f"ufw reload failed: {(exc.stderr or '').strip() or exc.returncode}") from exc
        return ActionResult(
            host=host.name,
            action=Handler.RELOAD_FIREWALL.value,
            changed=True,
            details="reloaded",
            resource="handler",
        )

    def _host_is_back(self, executor: Executor, before: Optional[str]) -> bool:
        try:
            executor.reconnect()
            alive = executor.run(self.alive_command, check=False, mutable=False)
            if alive.returncode != 0:
                return False
            after = self._boot_id(executor)
        except _CONNECTION_ERRORS as exc:
            logger.debug("host=%s not reachable yet: %s", executor.host.name, exc)
            return False
        # Without a boot id on either side the alive check alone decides.
        return before is None or after is None or after != before

    @staticmethod
    def _boot_id(executor: Executor) -> Optional[str]:
        try:
            text = executor.read_file(BOOT_ID)
        except _CONNECTION_ERRORS:
            return None
        return text.strip() if text else None
