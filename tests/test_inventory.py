from pathlib import Path

import pytest

from webstack_automation.inventory import InventoryError, InventoryLoader
from webstack_automation.types import OsFamily


def write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "inventory.toml"
    path.write_text(text)
    return path


def test_load_hosts_and_variables(tmp_path: Path) -> None:
    path = write(
        tmp_path,
        """
        [variables]
        web_app_repo = "https://git.example.invalid/myapp.git"
        mysql_root_password = { aws_secret = "prod/mysql", key = "root" }
        db_password = { env = "MYAPP_DB_PASSWORD" }
        firewall_ports = ["80", "443"]

        [hosts.web1]
        connection = "ssh"
        address = "10.0.0.5"
        user = "deploy"
        os_family = "Debian"

        [hosts.web1.variables]
        web_app_branch = "release"
        """,
    )

    inventory = InventoryLoader().load(path)

    web1 = inventory.hosts["web1"]
    assert web1.connection == "ssh"
    assert web1.user == "deploy"
    assert web1.port == 22
    assert web1.os_family is OsFamily.DEBIAN
    assert web1.variables == {"web_app_branch": "release"}
    assert inventory.variables["mysql_root_password"] == {"aws_secret": "prod/mysql", "key": "root"}


def test_missing_hosts_defaults_to_local(tmp_path: Path) -> None:
    inventory = InventoryLoader().load(write(tmp_path, '[variables]\nweb_app_repo = "repo"\n'))

    assert list(inventory.hosts) == ["local"]
    assert inventory.hosts["local"].connection == "local"
    assert inventory.hosts["local"].os_family is None


def test_plaintext_password_rejected(tmp_path: Path) -> None:
    path = write(tmp_path, '[variables]\nmysql_root_password = "hunter2"\n')

    with pytest.raises(InventoryError, match="mysql_root_password must reference a secret store") as excinfo:
        InventoryLoader().load(path)
    assert "hunter2" not in str(excinfo.value)


def test_plaintext_host_secret_rejected(tmp_path: Path) -> None:
    path = write(
        tmp_path,
        '[hosts.web1]\nconnection = "local"\n[hosts.web1.variables]\napp_secret_key = "abc"\n',
    )

    with pytest.raises(InventoryError, match="hosts.web1.variables.app_secret_key"):
        InventoryLoader().load(path)


@pytest.mark.parametrize(
    "body, message",
    [
        ('[hosts.web1]\nconnection = "winrm"\n', "unknown connection"),
        ('[hosts.web1]\nconnection = "ssh"\n', "has no address"),
        ('[hosts.web1]\nos_family = "suse"\n', "Unknown os_family"),
        ("[hosts]\nweb1 = 3\n", "must be a table"),
    ],
)
def test_invalid_hosts(tmp_path: Path, body: str, message: str) -> None:
    with pytest.raises(InventoryError, match=message):
        InventoryLoader().load(write(tmp_path, body))


def test_missing_file(tmp_path: Path) -> None:
    with pytest.raises(InventoryError, match="not found"):
        InventoryLoader().load(tmp_path / "nope.toml")


def test_invalid_toml(tmp_path: Path) -> None:
    with pytest.raises(InventoryError):
        InventoryLoader().load(write(tmp_path, "[hosts\n"))
