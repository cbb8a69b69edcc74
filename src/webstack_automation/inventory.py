from __future__ import annotations

from pathlib import Path
from typing import Any

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .secrets import is_secret_reference
from .types import HostConfig, Inventory, OsFamily

SENSITIVE_VARIABLES = ("db_password", "mysql_root_password", "app_secret_key")
CONNECTIONS = {"local", "ssh"}


class InventoryError(ValueError):
    """Raised for malformed inventory files."""


class InventoryLoader:
    """Loads hosts and run variables from TOML inventory files.

    ``[hosts.<name>]`` tables describe targets; ``[variables]`` holds the
    run variables shared by every host. Sensitive variables must be secret
    references and are rejected when written inline.
    """

    def load(self, path: Path) -> Inventory:
        path = Path(path)
        try:
            data = tomllib.loads(path.read_text())
        except tomllib.TOMLDecodeError as exc:
            raise InventoryError(f"{path}: {exc}") from None
        except FileNotFoundError:
            raise InventoryError(f"{path}: inventory file not found") from None
        try:
            hosts = self._parse_hosts(data.get("hosts", {}))
            variables = dict(data.get("variables", {}))
            self._check_sensitive(variables, "variables")
            for host in hosts.values():
                self._check_sensitive(host.variables, f"hosts.{host.name}.variables")
        except InventoryError as exc:
            raise InventoryError(f"{path}: {exc}") from None
        return Inventory(hosts=hosts, variables=variables)

    @staticmethod
    def _parse_hosts(host_data: dict[str, Any]) -> dict[str, HostConfig]:
        if not host_data:
            host_data = {"local": {"connection": "local"}}
        hosts: dict[str, HostConfig] = {}
        for name, payload in host_data.items():
            if not isinstance(payload, dict):
                raise InventoryError(f"host '{name}' must be a table")
            connection = payload.get("connection", "local")
            if connection not in CONNECTIONS:
                raise InventoryError(f"host '{name}' has unknown connection '{connection}'")
            if connection == "ssh" and not payload.get("address"):
                raise InventoryError(f"host '{name}' uses ssh but has no address")
            try:
                os_family = OsFamily.parse(payload.get("os_family"))
            except ValueError as exc:
                raise InventoryError(f"host '{name}': {exc}") from None
            variables = payload.get("variables", {})
            if not isinstance(variables, dict):
                raise InventoryError(f"host '{name}' variables must be a table")
            hosts[name] = HostConfig(
                name=name,
                connection=connection,
                address=payload.get("address"),
                user=str(payload.get("user", "root")),
                port=int(payload.get("port", 22)),
                key_path=payload.get("key_path"),
                os_family=os_family,
                variables=dict(variables),
            )
        return hosts

    @staticmethod
    def _check_sensitive(variables: dict[str, Any], where: str) -> None:
        for key in SENSITIVE_VARIABLES:
            if key in variables and not is_secret_reference(variables[key]):
                raise InventoryError(
                    f"{where}.{key} must reference a secret store (aws_secret or env), not plaintext"
                )
