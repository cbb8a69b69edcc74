import re
from pathlib import Path
from typing import Optional

import pytest

from webstack_automation.executors import CommandResult, Executor
from webstack_automation.handlers import HandlerRunner
from webstack_automation.runner import ProvisionRunner
from webstack_automation.types import ActionResult, HostConfig, Inventory, OsFamily

APT_SUMMARY = "{n} upgraded, 0 newly installed, {r} to remove and 0 not upgraded.\n"
HEAD = "3f1c2a9b8d7e6f5a4b3c2d1e0f9a8b7c6d5e4f3a"


class DebianHost(Executor):
    """In-memory Debian host whose state survives between runs."""

    def __init__(self):
        super().__init__(HostConfig(name="web1", os_family=OsFamily.DEBIAN))
        self.installed = {"openssh-server"}
        self.pending_upgrades = 3
        self.pending_autoremove = 1
        self.enabled: set[str] = set()
        self.active: set[str] = set()
        self.mysql_plugin = "auth_socket"
        self.mysql_password: Optional[str] = None
        self.databases = {"mysql"}
        self.dirs = {"/etc", "/var/www"}
        self.files: dict[str, list] = {}
        self.owners: dict[str, str] = {}
        self.ufw_rules: list[str] = []

    # Commands ------------------------------------------------------------
    def _execute(self, command, *, env, cwd, timeout, input):  # noqa: ARG002
        handler = getattr(self, "_cmd_" + command[0].replace("-", "_"))
        returncode, stdout = handler(command, env or {}, input or "")
        return CommandResult(command, stdout, "", returncode)

    def _cmd_apt_get(self, command, env, sql):
        if command[1] == "-s":
            verb = command[2]
            upgrades = self.pending_upgrades if verb in ("dist-upgrade", "upgrade") else 0
            removals = self.pending_autoremove if verb == "autoremove" else 0
            return 0, APT_SUMMARY.format(n=upgrades, r=removals)
        if "dist-upgrade" in command:
            self.pending_upgrades = 0
        elif command[1] == "autoremove":
            self.pending_autoremove = 0
        elif command[1] == "install":
            self.installed.update(command[3:])
        return 0, ""

    def _cmd_dpkg_query(self, command, env, sql):
        if command[-1] in self.installed:
            return 0, "install ok installed"
        return 1, ""

    def _cmd_systemctl(self, command, env, sql):
        verb = command[1]
        if verb == "--version":
            return 0, "systemd 252\n"
        service = command[2]
        if verb == "is-enabled":
            return (0 if service in self.enabled else 1), ""
        if verb == "is-active":
            return (0 if service in self.active else 3), ""
        if verb == "enable":
            self.enabled.add(service)
        elif verb == "start":
            self.active.add(service)
        return 0, ""

    def _cmd_mysql(self, command, env, sql):
        password = env.get("MYSQL_PWD")
        if self.mysql_plugin != "auth_socket" and password != self.mysql_password:
            return 1, ""
        if sql.startswith("SELECT 1"):
            return 0, "1\n"
        if "SELECT plugin" in sql:
            return 0, self.mysql_plugin + "\n"
        if "VERSION()" in sql:
            return 0, "8.0.36-0ubuntu0.22.04.1\n"
        if sql.startswith("SHOW GRANTS"):
            return 0, "GRANT ALL PRIVILEGES ON *.* TO `root`@`localhost` WITH GRANT OPTION\n"
        if "SCHEMATA" in sql:
            name = re.search(r"SCHEMA_NAME = '([^']+)'", sql).group(1)
            return 0, (name + "\n") if name in self.databases else ""
        altered = re.search(r"ALTER USER .* BY '([^']*)'", sql)
        if altered:
            self.mysql_plugin = "caching_sha2_password"
            self.mysql_password = altered.group(1)
        created = re.search(r"CREATE DATABASE `([^`]+)`", sql)
        if created:
            self.databases.add(created.group(1))
        return 0, ""

    def _cmd_test(self, command, env, sql):
        return (0 if command[2] in self.dirs else 1), ""

    def _cmd_git(self, command, env, sql):
        if command[1] == "clone":
            dest = command[-1]
            self.dirs.update({dest, f"{dest}/.git"})
            return 0, ""
        if "--abbrev-ref" in command:
            return 0, "main\n"
        if "rev-parse" in command:
            return 0, HEAD + "\n"
        return 0, ""

    def _cmd_find(self, command, env, sql):
        path = command[1]
        user = command[command.index("-user") + 1]
        group = command[command.index("-group") + 1]
        if self.owners.get(path) != f"{user}:{group}":
            return 0, path + "\n"
        return 0, ""

    def _cmd_chown(self, command, env, sql):
        self.owners[command[-1]] = command[-2]
        return 0, ""

    def _cmd_ufw(self, command, env, sql):
        if command[1:] == ["show", "added"]:
            listing = "\n".join(self.ufw_rules) if self.ufw_rules else "(None)"
            return 0, f"Added user rules (see 'ufw status' for running firewall):\n{listing}\n"
        self.ufw_rules.append("ufw " + " ".join(command[1:]))
        return 0, "Rule added\n"

    # File primitives ------------------------------------------------------
    def read_file(self, path):
        entry = self.files.get(str(path))
        return entry[0] if entry else None

    def _path_kind(self, path):
        if str(path) in self.dirs:
            return "directory"
        return "file" if str(path) in self.files else None

    def _write(self, path, content):
        self.files.setdefault(str(path), [None, 0o600])[0] = content

    def _make_dir(self, path):
        self.dirs.add(str(path))

    def _remove(self, path):
        self.files.pop(str(path), None)

    def _file_mode(self, path):
        entry = self.files.get(str(path))
        return entry[1] if entry else None

    def _chmod(self, path, mode):
        self.files[str(path)][1] = mode


class RecordingHandlers(HandlerRunner):
    def __init__(self):
        super().__init__()
        self.calls: list[str] = []

    def reboot(self, host, executor):
        self.calls.append("reboot")
        return ActionResult(host=host.name, action="reboot", changed=True, details="rebooted in 40s")

    def reload_firewall(self, host, executor):
        self.calls.append("reload_firewall")
        return ActionResult(host=host.name, action="reload_firewall", changed=True, details="reloaded")


@pytest.fixture
def provisioner(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("MYAPP_ROOT_PW", "root-pw")
    monkeypatch.setenv("MYAPP_DB_PW", "db-pw")
    monkeypatch.setenv("MYAPP_KEY", "app-key")
    (tmp_path / "nginx_app_config.j2").write_text(
        "server {\n    listen 80;\n    root {{ app_directory }};\n}\n"
    )
    host = DebianHost()
    handlers = RecordingHandlers()
    inventory = Inventory(
        hosts={"web1": host.host},
        variables={
            "web_app_repo": "https://git.example.invalid/myapp.git",
            "mysql_root_password": {"env": "MYAPP_ROOT_PW"},
            "db_password": {"env": "MYAPP_DB_PW"},
            "app_secret_key": {"env": "MYAPP_KEY"},
        },
    )
    runner = ProvisionRunner(
        inventory,
        template_dir=tmp_path,
        handler_runner=handlers,
        executor_factory=lambda h, dry_run=False: host,
    )
    return runner, host, handlers


def changed_steps(report):
    return [r.step for r in report.results if r.changed and r.step]


def test_first_run_converges_host(provisioner):
    runner, host, handlers = provisioner

    [report] = runner.run()

    assert report.failed is False, report.error
    assert "upgrade system packages" in changed_steps(report)
    assert handlers.calls == ["reboot", "reload_firewall"]
    assert host.mysql_password == "root-pw"
    assert "myapp_db" in host.databases
    assert host.owners["/var/www/myapp"] == "www-data:www-data"
    assert host.files["/etc/myapp/.env"] == ["DB_PASSWORD=db-pw\nSECRET_KEY=app-key\n", 0o644]
    assert host.ufw_rules == ["ufw allow 80", "ufw allow 443", "ufw allow 22"]
    assert "apache2" not in host.active


def test_second_run_changes_nothing(provisioner):
    runner, host, handlers = provisioner
    runner.run()
    handlers.calls.clear()

    [report] = runner.run()

    assert report.failed is False, report.error
    assert changed_steps(report) == []
    assert handlers.calls == []
    skipped = [r.step for r in report.results if r.skipped]
    assert skipped == ["run apache2 when nginx is not active"]
