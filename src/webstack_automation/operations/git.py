from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

from .base import Operation
from ..executors import Executor
from ..types import ActionResult, HostConfig

logger = logging.getLogger(__name__)


class GitOperation(Operation):
    """Check out ``repo`` at ``version`` into ``dest``.

    A missing checkout is cloned. An existing one is fetched and hard reset
    to ``origin/<version>``; local modifications make the operation fail
    unless ``force`` is set.
    """

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        repo = spec.get("repo")
        dest = spec.get("dest")
        if not repo:
            raise ValueError("git operation requires a repo")
        if not dest:
            raise ValueError("git operation requires a dest")
        self.repo = str(repo)
        self.dest = Path(str(dest))
        self.version = str(spec.get("version") or "main")
        self.force = bool(self._coerce_bool(spec.get("force", False)))
        self.timeout = spec.get("timeout")

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        checkout = executor.run(["test", "-d", str(self.dest / ".git")], check=False, mutable=False)
        if checkout.returncode != 0:
            return self._clone(host, executor)
        return self._update(host, executor)

    def _clone(self, host: HostConfig, executor: Executor) -> ActionResult:
        logger.info("Cloning %s into %s on %s", self.repo, self.dest, host.name)
        self._git(
            executor,
            ["clone", "--branch", self.version, self.repo, str(self.dest)],
            action="clone",
        )
        head = None if executor.dry_run else self._head(executor)
        detail = f"cloned {self.version}" + (f"@{head[:12]}" if head else "")
        return self._result(host, True, detail)

    def _update(self, host: HostConfig, executor: Executor) -> ActionResult:
        before = self._head(executor)
        dirty = self._is_dirty(executor)
        if dirty and not self.force:
            raise RuntimeError(f"{self.dest} has local modifications; set force to discard them")

        self._git(executor, ["-C", str(self.dest), "fetch", "--prune", "origin"], action="fetch", mutable=False)
        target = f"origin/{self.version}"
        remote = self._rev_parse(executor, target)
        if remote is None:
            raise RuntimeError(f"branch {self.version} not found in {self.repo}")
        if remote == before and not dirty:
            return self._result(host, False, "noop")

        logger.info("Resetting %s to %s on %s", self.dest, target, host.name)
        if not self._on_branch(executor):
            self._git(executor, ["-C", str(self.dest), "checkout", "-B", self.version, target], action="checkout")
        self._git(executor, ["-C", str(self.dest), "reset", "--hard", target], action="reset")
        details: list[str] = []
        if dirty:
            details.append("discarded-local-changes")
        if remote != before:
            details.append(f"{(before or '?')[:12]}->{remote[:12]}")
        return self._result(host, True, ", ".join(details))

    def _git(self, executor: Executor, args: list[str], *, action: str, mutable: bool = True) -> None:
        result = executor.run(["git", *args], check=False, mutable=mutable, timeout=self.timeout)
        if result.returncode != 0:
            raise RuntimeError(
                f"git {action} failed: {result.stderr.strip() or result.stdout.strip()}"
            )

    def _head(self, executor: Executor) -> Optional[str]:
        return self._rev_parse(executor, "HEAD")

    def _rev_parse(self, executor: Executor, ref: str) -> Optional[str]:
        result = executor.run(
            ["git", "-C", str(self.dest), "rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"],
            check=False,
            mutable=False,
        )
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def _is_dirty(self, executor: Executor) -> bool:
        result = executor.run(
            ["git", "-C", str(self.dest), "status", "--porcelain", "--untracked-files=no"],
            check=False,
            mutable=False,
        )
        return bool(result.stdout.strip())

    def _on_branch(self, executor: Executor) -> bool:
        result = executor.run(
            ["git", "-C", str(self.dest), "rev-parse", "--abbrev-ref", "HEAD"],
            check=False,
            mutable=False,
        )
        return result.stdout.strip() == self.version

    def _result(self, host: HostConfig, changed: bool, detail: str) -> ActionResult:
        return ActionResult(
            host=host.name, action="git", changed=changed, details=detail, resource=str(self.dest)
        )
