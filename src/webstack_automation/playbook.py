"""Step tables for the web application stack.

Each OS family gets its own concrete table, built once per host from the
run variables. Family-specific steps only appear in their own family's
table; a host of unknown family gets the family-independent steps alone.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

from .executors import Executor
from .operations.service import SystemCtl
from .profiles import HostProfile, profile_for
from .types import ActionSpec, Handler, OsFamily, Step

logger = logging.getLogger(__name__)

APP_DATABASE = "myapp_db"
APP_DATABASE_ENCODING = "utf8"
APP_DATABASE_COLLATION = "utf8_general_ci"
SECRETS_PATH = "/etc/myapp/.env"
SECRETS_MODE = "0644"
PROXY_CONFIG_MODE = "0644"
PROXY_SERVICE = "nginx"
EXPORTER_SERVICE = "prometheus-node-exporter"
DEFAULT_WEB_USER = "www-data"

DEFAULT_VARIABLES: dict[str, Any] = {
    "web_app_branch": "main",
    "app_directory": "/var/www/myapp",
    "nginx_config_template": "nginx_app_config.j2",
    "firewall_ports": ["80", "443", "22"],
}


class PlaybookError(ValueError):
    """Raised when the run variables cannot produce a step table."""


def with_defaults(variables: dict[str, Any]) -> dict[str, Any]:
    merged = dict(DEFAULT_VARIABLES)
    merged.update(variables)
    return merged


def build_step_table(
    family: Optional[OsFamily],
    variables: dict[str, Any],
    *,
    template_dir: Optional[Path] = None,
) -> list[Step]:
    """Return the ordered steps for ``family`` given resolved run variables."""

    variables = with_defaults(variables)
    profile = profile_for(family)
    _validate(profile, variables)

    steps: list[Step] = []
    if profile is not None:
        steps += _system_steps(profile, variables)
    steps += _application_steps(profile, variables)
    if profile is not None:
        steps += _proxy_steps(profile, variables, template_dir)
    steps += _firewall_steps(variables)
    if profile is not None:
        steps.append(
            Step(
                f"install {profile.exporter_package}",
                ActionSpec(
                    "package",
                    {"name": [profile.exporter_package], "state": "present", "manager": profile.package_manager},
                ),
            )
        )
    steps.append(
        Step(
            "run node exporter",
            ActionSpec("service", {"name": EXPORTER_SERVICE, "enabled": True, "state": "started"}),
        )
    )
    if "db_password" in variables:
        steps.append(_secrets_step(variables))
    if profile is not None:
        steps.append(
            Step(
                f"run {profile.legacy_web_service} when {PROXY_SERVICE} is not active",
                ActionSpec(
                    "service",
                    {"name": profile.legacy_web_service, "enabled": True, "state": "started"},
                ),
                guard=proxy_not_active,
            )
        )
    return steps


def proxy_not_active(executor: Executor) -> bool:
    """Query the reverse proxy's state right before the legacy web server decision."""

    active = SystemCtl().is_active(executor, PROXY_SERVICE)
    logger.debug("host=%s %s active=%s", executor.host.name, PROXY_SERVICE, active)
    return not active


def _validate(profile: Optional[HostProfile], variables: dict[str, Any]) -> None:
    required = ["web_app_repo", "app_directory"]
    if profile is not None:
        required.append("mysql_root_password")
    if "db_password" in variables:
        required.append("app_secret_key")
    missing = [name for name in required if variables.get(name) in (None, "")]
    if missing:
        raise PlaybookError(f"missing required variables: {', '.join(missing)}")
    ports = variables.get("firewall_ports")
    if not isinstance(ports, (list, tuple)):
        raise PlaybookError("firewall_ports must be a list")


def _system_steps(profile: HostProfile, variables: dict[str, Any]) -> list[Step]:
    manager = profile.package_manager
    if profile.family is OsFamily.DEBIAN:
        upgrade = Step(
            "upgrade system packages",
            ActionSpec(
                "package",
                {"update_cache": True, "upgrade": "dist", "autoremove": True, "manager": manager},
            ),
            notifies=Handler.REBOOT,
        )
    else:
        upgrade = Step(
            "upgrade system packages",
            ActionSpec("package", {"name": "*", "state": "latest", "manager": manager}),
            notifies=Handler.REBOOT,
        )
    return [
        upgrade,
        Step(
            "install web stack packages",
            ActionSpec(
                "package",
                {"name": list(profile.stack_packages), "state": "present", "manager": manager},
            ),
        ),
        Step(
            f"run {profile.database_service}",
            ActionSpec(
                "service", {"name": profile.database_service, "enabled": True, "state": "started"}
            ),
        ),
        Step(
            "set database root password",
            ActionSpec(
                "mysql_user",
                {
                    "name": "root",
                    "password": variables["mysql_root_password"],
                    "host": "localhost",
                    "priv": "*.*:ALL",
                },
            ),
        ),
        Step(
            f"create database {APP_DATABASE}",
            ActionSpec(
                "mysql_db",
                {
                    "name": APP_DATABASE,
                    "state": "present",
                    "encoding": APP_DATABASE_ENCODING,
                    "collation": APP_DATABASE_COLLATION,
                    "login_password": variables["mysql_root_password"],
                },
            ),
        ),
    ]


def _application_steps(profile: Optional[HostProfile], variables: dict[str, Any]) -> list[Step]:
    web_user = profile.web_user if profile is not None else DEFAULT_WEB_USER
    return [
        Step(
            "check out application",
            ActionSpec(
                "git",
                {
                    "repo": variables["web_app_repo"],
                    "dest": variables["app_directory"],
                    "version": variables["web_app_branch"],
                    "force": True,
                },
            ),
        ),
        Step(
            "set application ownership",
            ActionSpec(
                "file",
                {
                    "path": variables["app_directory"],
                    "owner": variables.get("app_owner") or web_user,
                    "group": variables.get("app_group") or web_user,
                    "recurse": True,
                },
            ),
        ),
    ]


def _proxy_steps(
    profile: HostProfile, variables: dict[str, Any], template_dir: Optional[Path]
) -> list[Step]:
    template_spec: dict[str, Any] = {
        "template": variables["nginx_config_template"],
        "dest": profile.proxy_config_path,
        "mode": PROXY_CONFIG_MODE,
        "variables": variables,
    }
    if template_dir is not None:
        template_spec["template_dir"] = str(template_dir)
    return [
        Step("render nginx site config", ActionSpec("file", template_spec)),
        Step(
            f"run {PROXY_SERVICE}",
            ActionSpec("service", {"name": PROXY_SERVICE, "enabled": True, "state": "started"}),
        ),
    ]


def _firewall_steps(variables: dict[str, Any]) -> list[Step]:
    return [
        Step(
            f"allow {port} through firewall",
            ActionSpec("ufw", {"rule": "allow", "name": str(port)}),
            notifies=Handler.RELOAD_FIREWALL,
        )
        for port in variables["firewall_ports"]
    ]


def _secrets_step(variables: dict[str, Any]) -> Step:
    content = (
        f"DB_PASSWORD={variables['db_password']}\n"
        f"SECRET_KEY={variables['app_secret_key']}\n"
    )
    return Step(
        "write application secrets",
        ActionSpec("file", {"path": SECRETS_PATH, "content": content, "mode": SECRETS_MODE}),
    )
