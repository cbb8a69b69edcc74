from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional
import logging
import re

from .base import Operation
from ..executors import Executor
from ..types import ActionResult, HostConfig

logger = logging.getLogger(__name__)

_APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}
_APT_SUMMARY_RE = re.compile(
    r"(\d+) upgraded, (\d+) newly installed, (\d+) to remove"
)


class PackageOperation(Operation):
    """Install, upgrade or remove packages using the host's package manager.

    ``name: "*"`` with ``state: latest`` upgrades every installed package,
    while ``upgrade`` runs a whole-system upgrade on apt hosts. Cache
    refreshes never count as a change.
    """

    def __init__(self, spec: dict[str, object]):
        super().__init__(spec)
        packages = spec.get("name") or spec.get("packages")
        if isinstance(packages, str):
            self.packages = [packages]
        else:
            self.packages = list(packages or [])
        self.update_cache = bool(self._coerce_bool(spec.get("update_cache", False)))
        self.autoremove = bool(self._coerce_bool(spec.get("autoremove", False)))
        upgrade = spec.get("upgrade")
        if upgrade is True:
            upgrade = "yes"
        self.upgrade = None if upgrade in (None, False, "no") else str(upgrade)
        if self.upgrade is not None and self.upgrade not in {"dist", "yes", "full"}:
            raise ValueError("package upgrade must be 'dist', 'full' or 'yes'")
        if not self.packages and not (self.update_cache or self.upgrade or self.autoremove):
            raise ValueError("package operation requires at least one package")
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent", "latest"}:
            raise ValueError("package operation state must be 'present', 'absent' or 'latest'")
        self.preferred_manager = spec.get("manager")

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        manager = PackageManagerFactory.create(self.preferred_manager, executor)
        logger.debug(
            "package-manager=%s host=%s packages=%s", manager.name, host.name, self.packages
        )
        changes: list[str] = []
        if self.update_cache:
            manager.update_cache(executor)
        if self.upgrade:
            changed, detail = manager.upgrade_all(executor, dist=self.upgrade in {"dist", "full"})
            if changed:
                changes.append(detail)
        if self.packages:
            if self.state == "present":
                changed, detail = manager.ensure_present(executor, self.packages)
            elif self.state == "latest":
                changed, detail = manager.ensure_latest(executor, self.packages)
            else:
                changed, detail = manager.ensure_absent(executor, self.packages)
            if changed:
                changes.append(detail)
        if self.autoremove:
            changed, detail = manager.autoremove(executor)
            if changed:
                changes.append(detail)

        details = " ".join(changes) if changes else "noop"
        return ActionResult(
            host=host.name,
            action="package",
            changed=bool(changes),
            details=f"manager={manager.name} {details}",
        )


class PackageManagerFactory:
    _MANAGERS = [
        ("apt-get", "apt", lambda: AptPackageManager()),
        ("dnf", "dnf", lambda: DnfPackageManager()),
        ("yum", "yum", lambda: YumPackageManager()),
    ]

    @classmethod
    def create(cls, preferred: Optional[object], executor: Executor) -> "PackageManager":
        if isinstance(preferred, str):
            preferred = preferred.lower()
            for _, key, factory in cls._MANAGERS:
                if key == preferred:
                    return factory()
            raise ValueError(f"Unknown package manager '{preferred}'")
        for binary, _, factory in cls._MANAGERS:
            found = executor.run(["sh", "-c", f"command -v {binary}"], check=False, mutable=False)
            if found.returncode == 0:
                return factory()
        raise RuntimeError(f"No supported package manager found on {executor.host.name}")


class PackageManager:
    name = "generic"

    def ensure_present(self, executor: Executor, packages: Iterable[str]) -> tuple[bool, str]:
        needed = [pkg for pkg in packages if not self.is_installed(executor, pkg)]
        if not needed:
            return False, "already-installed"
        self.install(executor, needed)
        return True, f"installed={','.join(needed)}"

    def ensure_absent(self, executor: Executor, packages: Iterable[str]) -> tuple[bool, str]:
        removable = [pkg for pkg in packages if self.is_installed(executor, pkg)]
        if not removable:
            return False, "already-removed"
        self.remove(executor, removable)
        return True, f"removed={','.join(removable)}"

    def ensure_latest(self, executor: Executor, packages: Iterable[str]) -> tuple[bool, str]:
        raise NotImplementedError

    def update_cache(self, executor: Executor) -> None:
        """Refresh package metadata; a no-op where the manager does it implicitly."""

    def upgrade_all(self, executor: Executor, *, dist: bool = False) -> tuple[bool, str]:
        raise NotImplementedError

    def autoremove(self, executor: Executor) -> tuple[bool, str]:
        raise NotImplementedError

    def install(self, executor: Executor, packages: list[str]) -> None:
        raise NotImplementedError

    def remove(self, executor: Executor, packages: list[str]) -> None:
        raise NotImplementedError

    def is_installed(self, executor: Executor, package: str) -> bool:
        raise NotImplementedError


@dataclass
class DpkgQuery:
    executable: str = "dpkg-query"

    def check(self, executor: Executor, package: str) -> bool:
        result = executor.run(
            [self.executable, "-W", "-f", "${Status}", package],
            check=False,
            mutable=False,
        )
        return result.returncode == 0 and "install ok installed" in result.stdout


class AptPackageManager(PackageManager):
    name = "apt"

    def __init__(self) -> None:
        self.query = DpkgQuery()

    def install(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["apt-get", "install", "-y", *packages], env=_APT_ENV)

    def remove(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["apt-get", "remove", "-y", *packages], env=_APT_ENV)

    def is_installed(self, executor: Executor, package: str) -> bool:
        return self.query.check(executor, package)

    def update_cache(self, executor: Executor) -> None:
        executor.run(["apt-get", "update"], env=_APT_ENV)

    def ensure_latest(self, executor: Executor, packages: Iterable[str]) -> tuple[bool, str]:
        packages = list(packages)
        pending = self._simulate(executor, ["install", "--only-upgrade", *packages])
        missing = [pkg for pkg in packages if not self.is_installed(executor, pkg)]
        if not pending and not missing:
            return False, "already-latest"
        executor.run(["apt-get", "install", "-y", *packages], env=_APT_ENV)
        return True, f"latest={','.join(packages)}"

    def upgrade_all(self, executor: Executor, *, dist: bool = False) -> tuple[bool, str]:
        verb = "dist-upgrade" if dist else "upgrade"
        if not self._simulate(executor, [verb]):
            return False, "up-to-date"
        executor.run(
            ["apt-get", "-y", "-o", "Dpkg::Options::=--force-confdef", "-o",
             "Dpkg::Options::=--force-confold", verb],
            env=_APT_ENV,
        )
        return True, verb

    def autoremove(self, executor: Executor) -> tuple[bool, str]:
        if not self._simulate(executor, ["autoremove"]):
            return False, "nothing-to-autoremove"
        executor.run(["apt-get", "autoremove", "-y"], env=_APT_ENV)
        return True, "autoremoved"

    @staticmethod
    def _simulate(executor: Executor, args: list[str]) -> bool:
        """Return True when ``apt-get -s`` reports pending work."""

        result = executor.run(["apt-get", "-s", *args], mutable=False, env=_APT_ENV)
        match = _APT_SUMMARY_RE.search(result.stdout)
        if not match:
            return False
        return any(int(count) for count in match.groups())


class DnfPackageManager(PackageManager):
    name = "dnf"
    executable = "dnf"

    def install(self, executor: Executor, packages: list[str]) -> None:
        executor.run([self.executable, "install", "-y", *packages])

    def remove(self, executor: Executor, packages: list[str]) -> None:
        executor.run([self.executable, "remove", "-y", *packages])

    def is_installed(self, executor: Executor, package: str) -> bool:
        result = executor.run(["rpm", "-q", package], check=False, mutable=False)
        return result.returncode == 0

    def ensure_latest(self, executor: Executor, packages: Iterable[str]) -> tuple[bool, str]:
        packages = list(packages)
        if packages == ["*"]:
            return self.upgrade_all(executor)
        missing = [pkg for pkg in packages if not self.is_installed(executor, pkg)]
        if missing:
            self.install(executor, missing)
        updates = self._check_update(executor, [pkg for pkg in packages if pkg not in missing])
        if updates:
            executor.run([self.executable, "update", "-y", *packages])
        if not missing and not updates:
            return False, "already-latest"
        return True, f"latest={','.join(packages)}"

    def upgrade_all(self, executor: Executor, *, dist: bool = False) -> tuple[bool, str]:
        if not self._check_update(executor, []):
            return False, "up-to-date"
        executor.run([self.executable, "update", "-y"])
        return True, "updated=*"

    def autoremove(self, executor: Executor) -> tuple[bool, str]:
        result = executor.run([self.executable, "autoremove", "--assumeno"], check=False, mutable=False)
        if "Nothing to do" in result.stdout or "Removing:" not in result.stdout:
            return False, "nothing-to-autoremove"
        executor.run([self.executable, "autoremove", "-y"])
        return True, "autoremoved"

    def _check_update(self, executor: Executor, packages: list[str]) -> bool:
        # check-update exits 100 when updates are available, 0 when none.
        result = executor.run(
            [self.executable, "check-update", "-q", *packages], check=False, mutable=False
        )
        if result.returncode not in (0, 100):
            raise RuntimeError(
                f"{self.executable} check-update failed: {result.stderr.strip() or result.stdout.strip()}"
            )
        return result.returncode == 100


class YumPackageManager(DnfPackageManager):
    name = "yum"
    executable = "yum"
