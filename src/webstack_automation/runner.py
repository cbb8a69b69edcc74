from __future__ import annotations

import logging
import subprocess
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from paramiko.ssh_exception import SSHException

from .executors import Executor, executor_for
from .handlers import HandlerError, HandlerFlags, HandlerRunner
from .operations import OPERATION_REGISTRY, Operation
from .playbook import PlaybookError, build_step_table
from .profiles import detect_os_family
from .secrets import SecretError, SecretResolver
from .types import ActionResult, HostConfig, HostReport, Inventory, Step

logger = logging.getLogger(__name__)

PREPARE_STEP = "prepare host"

ProgressCallback = Callable[[HostConfig, Step], None]


class StepFailed(RuntimeError):
    """An operation failed and the rest of the host's sequence was abandoned."""

    def __init__(self, host: str, step: str, message: str):
        super().__init__(f"{host}: step '{step}' failed: {message}")
        self.host = host
        self.step = step
        self.message = message


class ProvisionRunner:
    """Applies the web stack step table to every host of an inventory.

    Hosts run in parallel, each with its own executor and handler flags;
    within a host the steps run strictly in order and the first failure
    stops that host.
    """

    def __init__(
        self,
        inventory: Inventory,
        *,
        template_dir: Optional[Path] = None,
        dry_run: bool = False,
        forks: int = 5,
        handler_runner: Optional[HandlerRunner] = None,
        secret_resolver: Optional[SecretResolver] = None,
        executor_factory: Callable[..., Executor] = executor_for,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.inventory = inventory
        self.template_dir = template_dir
        self.dry_run = dry_run
        self.forks = max(1, forks)
        self.handler_runner = handler_runner or HandlerRunner()
        self.secret_resolver = secret_resolver or SecretResolver()
        self.executor_factory = executor_factory
        self.progress_callback = progress_callback

    def run(self, limit: Optional[Iterable[str]] = None) -> list[HostReport]:
        hosts = self._select_hosts(limit)
        if len(hosts) == 1 or self.forks == 1:
            return [self.run_host(host) for host in hosts]
        with ThreadPoolExecutor(max_workers=min(self.forks, len(hosts))) as pool:
            return list(pool.map(self.run_host, hosts))

    def _select_hosts(self, limit: Optional[Iterable[str]]) -> list[HostConfig]:
        if limit is None:
            return list(self.inventory.hosts.values())
        hosts: list[HostConfig] = []
        for name in limit:
            host = self.inventory.hosts.get(name)
            if not host:
                raise KeyError(f"Host '{name}' is not defined")
            hosts.append(host)
        return hosts

    def run_host(self, host: HostConfig) -> HostReport:
        report = HostReport(host=host.name)
        try:
            executor = self.executor_factory(host, dry_run=self.dry_run)
        except ValueError as exc:
            return self._fail(report, PREPARE_STEP, str(exc))
        try:
            try:
                steps = self._prepare(host, executor)
            except (
                SecretError,
                PlaybookError,
                OSError,
                SSHException,
                subprocess.CalledProcessError,
            ) as exc:
                message = self.secret_resolver.redact(str(exc))
                logger.error("host=%s preparation failed: %s", host.name, message)
                return self._fail(report, PREPARE_STEP, message)

            flags = HandlerFlags()
            try:
                self._run_steps(host, executor, steps, flags, report)
            except StepFailed as exc:
                return self._fail(report, exc.step, exc.message)

            try:
                report.results.extend(self.handler_runner.run(flags, host, executor))
            except HandlerError as exc:
                logger.error("host=%s handler failed: %s", host.name, exc)
                return self._fail(report, "handlers", str(exc))
        finally:
            executor.close()
        return report

    def _prepare(self, host: HostConfig, executor: Executor) -> list[Step]:
        merged: dict[str, Any] = dict(self.inventory.variables)
        merged.update(host.variables)
        variables = self.secret_resolver.resolve(merged)
        family = host.os_family or detect_os_family(executor)
        logger.info("host=%s os_family=%s", host.name, family.value if family else "unknown")
        return build_step_table(family, variables, template_dir=self.template_dir)

    def _run_steps(
        self,
        host: HostConfig,
        executor: Executor,
        steps: list[Step],
        flags: HandlerFlags,
        report: HostReport,
    ) -> None:
        for step in steps:
            if self.progress_callback:
                self.progress_callback(host, step)
            if not self._guard_allows(step, executor):
                report.results.append(
                    ActionResult(
                        host=host.name,
                        action=step.action.type,
                        changed=False,
                        details="skipped (guard)",
                        skipped=True,
                        resource=self._resource_name(step.action.data),
                        step=step.name,
                    )
                )
                continue

            result = self._apply(host, executor, step)
            report.results.append(result)
            if result.failed:
                raise StepFailed(host.name, step.name, result.details)
            if result.changed and step.notifies is not None:
                logger.debug("host=%s step=%s notified %s", host.name, step.name, step.notifies.value)
                flags.notify(step.notifies)

    def _guard_allows(self, step: Step, executor: Executor) -> bool:
        if step.guard is None:
            return True
        try:
            return bool(step.guard(executor))
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "host=%s guard for '%s' raised %s; skipping step", executor.host.name, step.name, exc
            )
            return False

    def _apply(self, host: HostConfig, executor: Executor, step: Step) -> ActionResult:
        resource = self._resource_name(step.action.data)
        operation_cls = OPERATION_REGISTRY.get(step.action.type)
        if not operation_cls:
            detail = f"unknown operation '{step.action.type}'"
            logger.error(detail)
            return ActionResult(
                host=host.name,
                action=step.action.type,
                changed=False,
                details=detail,
                failed=True,
                resource=resource,
                step=step.name,
            )
        try:
            operation: Operation = operation_cls(dict(step.action.data))
            result = operation.apply(host, executor)
        except Exception as exc:  # noqa: BLE001
            detail = self.secret_resolver.redact(self._describe(exc))
            logger.error(
                "host=%s step=%s action=%s failed: %s", host.name, step.name, step.action.type, detail
            )
            return ActionResult(
                host=host.name,
                action=step.action.type,
                changed=False,
                details=detail,
                failed=True,
                resource=resource,
                step=step.name,
            )
        logger.debug(
            "host=%s step=%s action=%s changed=%s", host.name, step.name, step.action.type, result.changed
        )
        result.details = self.secret_resolver.redact(result.details)
        result.step = step.name
        if result.resource is None:
            result.resource = resource
        return result

    @staticmethod
    def _describe(exc: Exception) -> str:
        if isinstance(exc, subprocess.CalledProcessError):
            output = (exc.stderr or exc.stdout or "").strip()
            command = exc.cmd[0] if isinstance(exc.cmd, list) and exc.cmd else exc.cmd
            return f"{command} exited {exc.returncode}: {output}" if output else f"{command} exited {exc.returncode}"
        return str(exc)

    @staticmethod
    def _resource_name(data: dict[str, Any]) -> Optional[str]:
        for key in ("dest", "path", "name", "port", "repo"):
            value = data.get(key)
            if isinstance(value, (list, tuple)):
                rendered = ", ".join(str(p) for p in value[:3])
                return rendered + (", ..." if len(value) > 3 else "")
            if value:
                return str(value)
        return None

    @staticmethod
    def _fail(report: HostReport, step: str, message: str) -> HostReport:
        report.failed_step = step
        report.error = message
        return report
