from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .executors import Executor
from .types import OsFamily

logger = logging.getLogger(__name__)

OS_RELEASE = Path("/etc/os-release")


@dataclass(frozen=True)
class HostProfile:
    family: OsFamily
    package_manager: str
    stack_packages: tuple[str, ...]
    database_service: str
    proxy_config_path: str
    legacy_web_service: str
    web_user: str = "www-data"
    exporter_package: str = "prometheus-node-exporter"


PROFILES: dict[OsFamily, HostProfile] = {
    OsFamily.DEBIAN: HostProfile(
        family=OsFamily.DEBIAN,
        package_manager="apt",
        stack_packages=("apache2", "mysql-server", "php", "php-mysql", "git", "unzip"),
        database_service="mysql",
        proxy_config_path="/etc/nginx/sites-available/myapp",
        legacy_web_service="apache2",
    ),
    OsFamily.REDHAT: HostProfile(
        family=OsFamily.REDHAT,
        package_manager="yum",
        stack_packages=("httpd", "mariadb-server", "php", "php-mysqlnd", "git", "unzip"),
        database_service="mariadb",
        proxy_config_path="/etc/nginx/conf.d/myapp.conf",
        legacy_web_service="httpd",
        web_user="apache",
    ),
}

_FAMILY_IDS = {
    OsFamily.DEBIAN: {"debian", "ubuntu", "linuxmint", "raspbian", "pop"},
    OsFamily.REDHAT: {"rhel", "redhat", "centos", "fedora", "rocky", "almalinux", "ol", "amzn"},
}


def profile_for(family: Optional[OsFamily]) -> Optional[HostProfile]:
    if family is None:
        return None
    return PROFILES[family]


def parse_os_release(text: str) -> dict[str, str]:
    fields: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, raw = line.partition("=")
        try:
            parts = shlex.split(raw)
        except ValueError:
            parts = [raw]
        fields[key.strip()] = parts[0] if parts else ""
    return fields


def family_from_os_release(text: str) -> Optional[OsFamily]:
    fields = parse_os_release(text)
    ids = [fields.get("ID", "").lower(), *fields.get("ID_LIKE", "").lower().split()]
    for family, known in _FAMILY_IDS.items():
        if any(candidate in known for candidate in ids):
            return family
    return None


def detect_os_family(executor: Executor) -> Optional[OsFamily]:
    """Read ``/etc/os-release`` on the host; unknown distributions yield None."""

    text = executor.read_file(OS_RELEASE)
    if text is None:
        logger.warning("host=%s has no %s; OS family unknown", executor.host.name, OS_RELEASE)
        return None
    family = family_from_os_release(text)
    if family is None:
        logger.warning("host=%s runs an unsupported distribution", executor.host.name)
    return family
