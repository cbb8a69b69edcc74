from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from .base import Operation
from ..executors import CommandResult, Executor
from ..types import ActionResult, HostConfig

logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_$]+$")
_PRIV_RE = re.compile(r"^(?P<target>[^:]+):(?P<privs>.+)$")
_SOCKET_PLUGINS = {"auth_socket", "unix_socket"}


def quote_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def quote_identifier(value: str) -> str:
    if not _IDENTIFIER_RE.match(value):
        raise ValueError(f"invalid MySQL identifier '{value}'")
    return f"`{value}`"


def bare_identifier(value: str) -> str:
    if not _IDENTIFIER_RE.match(value):
        raise ValueError(f"invalid MySQL identifier '{value}'")
    return value


@dataclass
class MysqlClient:
    """Thin wrapper over the ``mysql`` command line client.

    SQL is fed on stdin and the login password through ``MYSQL_PWD`` so
    neither shows up in a process listing.
    """

    user: str = "root"
    password: Optional[str] = None
    socket: Optional[str] = None
    executable: str = "mysql"

    def _command(self, *extra: str) -> list[str]:
        cmd = [self.executable, "--batch", "--skip-column-names", "-u", self.user]
        if self.socket:
            cmd += ["--socket", self.socket]
        return [*cmd, *extra]

    def _env(self, password: Optional[str]) -> Optional[dict[str, str]]:
        return {"MYSQL_PWD": password} if password else None

    def can_login(self, executor: Executor, password: Optional[str]) -> bool:
        result = executor.run(
            self._command(),
            check=False,
            mutable=False,
            env=self._env(password),
            input="SELECT 1;\n",
        )
        return result.returncode == 0

    def query(self, executor: Executor, sql: str) -> CommandResult:
        return self._exec(executor, sql, mutable=False)

    def execute(self, executor: Executor, sql: str) -> CommandResult:
        return self._exec(executor, sql, mutable=True)

    def _exec(self, executor: Executor, sql: str, *, mutable: bool) -> CommandResult:
        result = executor.run(
            self._command(),
            check=False,
            mutable=mutable,
            env=self._env(self.password),
            input=sql,
        )
        if result.returncode != 0:
            # stderr never echoes the statement, so it is safe to surface.
            raise RuntimeError(f"mysql failed: {result.stderr.strip() or result.returncode}")
        return result


class MysqlUserOperation(Operation):
    """Ensure a MySQL account exists with the given password and privileges.

    The login tries ``login_password`` (defaulting to the target password)
    first and falls back to passwordless socket authentication, which is how
    a fresh Debian or RedHat install lets root in.
    """

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        name = spec.get("name")
        if not name:
            raise ValueError("mysql_user operation requires a name")
        password = spec.get("password")
        if password is None:
            raise ValueError("mysql_user operation requires a password")
        self.name = str(name)
        self.password = str(password)
        self.host_pattern = str(spec.get("host", "localhost"))
        self.priv = spec.get("priv")
        self.login_user = str(spec.get("login_user", "root"))
        login_password = spec.get("login_password")
        self.login_password = str(login_password) if login_password is not None else None
        self.login_socket = spec.get("login_unix_socket")
        self.grants = self._parse_priv(self.priv) if self.priv else None

    @staticmethod
    def _parse_priv(value: Any) -> tuple[str, str]:
        match = _PRIV_RE.match(str(value))
        if not match:
            raise ValueError("mysql_user priv must look like 'db.table:PRIV1,PRIV2'")
        target = match.group("target").strip()
        privs = ", ".join(p.strip().upper() for p in match.group("privs").split(","))
        db, _, table = target.partition(".")
        if db != "*":
            db = quote_identifier(db)
        if table not in {"", "*"}:
            table = quote_identifier(table)
        return f"{db}.{table or '*'}", privs

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        client = self._login(executor)
        account = f"{quote_string(self.name)}@{quote_string(self.host_pattern)}"
        changes: list[str] = []

        plugin = client.query(
            executor,
            "SELECT plugin FROM mysql.user WHERE User = {} AND Host = {};\n".format(
                quote_string(self.name), quote_string(self.host_pattern)
            ),
        ).stdout.strip()
        mariadb = "MariaDB" in client.query(executor, "SELECT VERSION();\n").stdout
        statements: list[str] = []
        if not plugin:
            statements.append(f"CREATE USER {account} IDENTIFIED BY {quote_string(self.password)};")
            changes.append("created")
        elif not self._password_matches(executor, client, plugin, mariadb=mariadb):
            statements.append(f"ALTER USER {account} {self._identified_clause(plugin, mariadb=mariadb)};")
            changes.append("password")

        if self.grants is not None:
            target, privs = self.grants
            if not self._has_grant(executor, client, account, target, privs):
                suffix = " WITH GRANT OPTION" if target == "*.*" and privs == "ALL" else ""
                statements.append(f"GRANT {privs} ON {target} TO {account}{suffix};")
                changes.append("privileges")

        if statements:
            logger.debug("Updating MySQL account %s on %s (%s)", self.name, host.name, ", ".join(changes))
            client.execute(executor, "\n".join([*statements, "FLUSH PRIVILEGES;", ""]))

        detail = ", ".join(changes) if changes else "noop"
        return ActionResult(
            host=host.name, action="mysql_user", changed=bool(changes), details=detail, resource=self.name
        )

    def _login(self, executor: Executor) -> MysqlClient:
        candidates = [self.login_password or self.password, None]
        for password in candidates:
            client = MysqlClient(user=self.login_user, password=password, socket=self.login_socket)
            if client.can_login(executor, password):
                return client
        raise RuntimeError(f"unable to log in to MySQL as {self.login_user}")

    def _password_matches(
        self, executor: Executor, client: MysqlClient, plugin: str, *, mariadb: bool
    ) -> bool:
        if mariadb:
            # A unix_socket alternative accepts any password, so compare the stored hash.
            found = client.query(
                executor,
                "SELECT COUNT(*) FROM mysql.global_priv WHERE User = {} AND Host = {} "
                "AND JSON_SEARCH(Priv, 'one', PASSWORD({})) IS NOT NULL;\n".format(
                    quote_string(self.name), quote_string(self.host_pattern), quote_string(self.password)
                ),
            ).stdout.strip()
            return found not in ("", "0")
        if plugin in _SOCKET_PLUGINS:
            return False
        account = MysqlClient(user=self.name, password=self.password, socket=self.login_socket)
        return account.can_login(executor, self.password)

    def _identified_clause(self, plugin: str, *, mariadb: bool) -> str:
        password = quote_string(self.password)
        if mariadb:
            return f"IDENTIFIED VIA mysql_native_password USING PASSWORD({password}) OR unix_socket"
        if plugin in _SOCKET_PLUGINS:
            return f"IDENTIFIED WITH caching_sha2_password BY {password}"
        return f"IDENTIFIED BY {password}"

    @staticmethod
    def _has_grant(executor: Executor, client: MysqlClient, account: str, target: str, privs: str) -> bool:
        result = client.query(executor, f"SHOW GRANTS FOR {account};\n")
        wanted = "ALL PRIVILEGES" if privs == "ALL" else privs
        for line in result.stdout.splitlines():
            if f" ON {target} " in line and wanted in line:
                return True
        return False


class MysqlDatabaseOperation(Operation):
    """Ensure a database exists with the requested character set."""

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        name = spec.get("name")
        if not name:
            raise ValueError("mysql_db operation requires a name")
        self.name = str(name)
        quote_identifier(self.name)
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("mysql_db state must be 'present' or 'absent'")
        self.encoding = spec.get("encoding")
        self.collation = spec.get("collation")
        self.login_user = str(spec.get("login_user", "root"))
        login_password = spec.get("login_password")
        self.login_password = str(login_password) if login_password is not None else None
        self.login_socket = spec.get("login_unix_socket")

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        client = self._login(executor)
        exists = client.query(
            executor,
            "SELECT SCHEMA_NAME FROM INFORMATION_SCHEMA.SCHEMATA WHERE SCHEMA_NAME = {};\n".format(
                quote_string(self.name)
            ),
        ).stdout.strip() == self.name

        changed = False
        if self.state == "present" and not exists:
            statement = f"CREATE DATABASE {quote_identifier(self.name)}"
            if self.encoding:
                statement += f" CHARACTER SET {bare_identifier(str(self.encoding))}"
            if self.collation:
                statement += f" COLLATE {bare_identifier(str(self.collation))}"
            client.execute(executor, statement + ";\n")
            changed = True
        elif self.state == "absent" and exists:
            client.execute(executor, f"DROP DATABASE {quote_identifier(self.name)};\n")
            changed = True

        if changed:
            detail = "created" if self.state == "present" else "removed"
        else:
            detail = "noop"
        return ActionResult(
            host=host.name, action="mysql_db", changed=changed, details=detail, resource=self.name
        )

    def _login(self, executor: Executor) -> MysqlClient:
        for password in (self.login_password, None):
            client = MysqlClient(user=self.login_user, password=password, socket=self.login_socket)
            if client.can_login(executor, password):
                return client
        raise RuntimeError(f"unable to log in to MySQL as {self.login_user}")
