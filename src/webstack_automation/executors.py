from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Union
import logging
import os
import shlex
import shutil
import stat
import subprocess

import paramiko
from paramiko.ssh_exception import AuthenticationException, SSHException

from .types import HostConfig

logger = logging.getLogger(__name__)

_PATH_KIND_SCRIPT = 'if [ -d "$1" ]; then echo directory; elif [ -e "$1" ] || [ -L "$1" ]; then echo file; fi'
_ENV_PRELUDE = (
    'while IFS= read -r __kv && [ -n "$__kv" ]; do export "$__kv"; done; exec "$@"'
)


@dataclass
class CommandResult:
    command: list[str]
    stdout: str
    stderr: str
    returncode: int


class Executor:
    """Base executor abstraction used by operations."""

    def __init__(self, host: HostConfig, *, dry_run: bool = False):
        self.host = host
        self.dry_run = dry_run

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        mutable: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
    ) -> CommandResult:
        """Run ``command`` and optionally skip it during dry-runs."""

        cmd_list = list(command)
        if self.dry_run and mutable:
            return CommandResult(cmd_list, "", "skipped (dry-run)", 0)

        result = self._execute(cmd_list, env=env, cwd=cwd, timeout=timeout, input=input)
        if check and result.returncode != 0:
            raise subprocess.CalledProcessError(
                result.returncode,
                cmd_list,
                result.stdout,
                result.stderr,
            )
        return result

    def _execute(
        self,
        command: list[str],
        *,
        env: Optional[dict[str, str]],
        cwd: Optional[Union[str, Path]],
        timeout: Optional[float],
        input: Optional[str],
    ) -> CommandResult:
        raise NotImplementedError

    def close(self) -> None:
        """Release any connection held by the executor."""

    def reconnect(self) -> None:
        """Re-establish the connection to the host after it went away."""

    # File primitives -----------------------------------------------------
    # Convergence lives here; subclasses supply the raw _path_kind, _write,
    # _make_dir, _remove, _file_mode and _chmod operations.
    def read_file(self, path: Path) -> Optional[str]:
        raise NotImplementedError

    def write_file(self, path: Path, *, content: str, mode: Optional[int]) -> tuple[bool, str]:
        reasons: list[str] = []
        if self.read_file(path) != content:
            reasons.append("content")
            if not self.dry_run:
                self._write(path, content)
        if self._converge_mode(path, mode):
            reasons.append(f"mode->{mode:04o}")
        return bool(reasons), ", ".join(reasons) if reasons else "noop"

    def ensure_directory(self, path: Path, *, mode: Optional[int]) -> tuple[bool, str]:
        reasons: list[str] = []
        kind = self._path_kind(path)
        if kind != "directory":
            reasons.append("created" if kind is None else "replaced-non-dir")
            if not self.dry_run:
                if kind is not None:
                    self._remove(path)
                self._make_dir(path)
        if self._converge_mode(path, mode):
            reasons.append(f"mode->{mode:04o}")
        return bool(reasons), ", ".join(reasons) if reasons else "noop"

    def remove_path(self, path: Path) -> bool:
        if self._path_kind(path) is None:
            return False
        if not self.dry_run:
            self._remove(path)
        return True

    def _converge_mode(self, path: Path, mode: Optional[int]) -> bool:
        if mode is None or self._file_mode(path) == mode:
            return False
        if not self.dry_run:
            self._chmod(path, mode)
        return True

    def _path_kind(self, path: Path) -> Optional[str]:
        """Return ``"directory"``, ``"file"`` or None when nothing exists at ``path``."""
        raise NotImplementedError

    def _write(self, path: Path, content: str) -> None:
        raise NotImplementedError

    def _make_dir(self, path: Path) -> None:
        raise NotImplementedError

    def _remove(self, path: Path) -> None:
        raise NotImplementedError

    def _file_mode(self, path: Path) -> Optional[int]:
        raise NotImplementedError

    def _chmod(self, path: Path, mode: int) -> None:
        raise NotImplementedError

    def set_ownership(
        self,
        path: Path,
        *,
        owner: Optional[str],
        group: Optional[str],
        recurse: bool = False,
    ) -> tuple[bool, str]:
        """Apply ``owner``/``group`` to ``path`` and report whether anything differed."""

        if owner is None and group is None:
            return False, "noop"
        spec = owner or ""
        if group is not None:
            spec = f"{spec}:{group}"
        if self._path_kind(path) is None:
            # A dry run never created the path, so nothing can be compared yet.
            if self.dry_run:
                return True, f"owner->{spec}"
            raise FileNotFoundError(f"cannot set ownership on {path}: no such file or directory")
        find_cmd = ["find", str(path)]
        if not recurse:
            find_cmd += ["-maxdepth", "0"]
        mismatch: list[str] = []
        if owner is not None:
            mismatch += ["!", "-user", owner]
        if group is not None:
            if mismatch:
                mismatch.append("-o")
            mismatch += ["!", "-group", group]
        stray = self.run([*find_cmd, "(", *mismatch, ")", "-print", "-quit"], mutable=False)
        if not stray.stdout.strip():
            return False, "noop"

        chown_cmd = ["chown"]
        if recurse:
            chown_cmd.append("-R")
        self.run([*chown_cmd, spec, str(path)])
        return True, f"owner->{spec}"


class LocalExecutor(Executor):
    """Executor that acts directly on the local host."""

    def _execute(
        self,
        command: list[str],
        *,
        env: Optional[dict[str, str]],
        cwd: Optional[Union[str, Path]],
        timeout: Optional[float],
        input: Optional[str],
    ) -> CommandResult:
        exec_env = None
        if env:
            exec_env = os.environ.copy()
            exec_env.update(env)

        proc = subprocess.run(
            command,
            capture_output=True,
            text=True,
            check=False,
            env=exec_env,
            cwd=str(cwd) if cwd is not None else None,
            timeout=timeout,
            input=input,
        )
        return CommandResult(command, proc.stdout, proc.stderr, proc.returncode)

    def read_file(self, path: Path) -> Optional[str]:
        try:
            return path.read_text()
        except FileNotFoundError:
            return None

    def _path_kind(self, path: Path) -> Optional[str]:
        if path.is_dir():
            return "directory"
        if path.exists() or path.is_symlink():
            return "file"
        return None

    def _write(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)

    def _make_dir(self, path: Path) -> None:
        path.mkdir(parents=True, exist_ok=True)

    def _remove(self, path: Path) -> None:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()

    def _file_mode(self, path: Path) -> Optional[int]:
        try:
            return stat.S_IMODE(path.stat().st_mode)
        except FileNotFoundError:
            return None

    def _chmod(self, path: Path, mode: int) -> None:
        os.chmod(path, mode)


class SshExecutor(Executor):
    """Executor that drives a remote host over SSH.

    Commands run through ``sudo -n`` when connecting as a non-root user.
    Environment variables are streamed over stdin ahead of the command's own
    input so secrets never appear on a remote command line. File primitives
    are built from plain shell commands over the same connection.
    """

    def __init__(self, host: HostConfig, *, dry_run: bool = False, connect_timeout: float = 30):
        super().__init__(host, dry_run=dry_run)
        if not host.address:
            raise ValueError(f"Host '{host.name}' uses ssh but has no address")
        self.connect_timeout = connect_timeout
        self._client: Optional[paramiko.SSHClient] = None

    def connect(self) -> None:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        connect_kwargs: dict = {
            "hostname": self.host.address,
            "port": self.host.port,
            "username": self.host.user,
            "timeout": self.connect_timeout,
        }
        if self.host.key_path:
            connect_kwargs["key_filename"] = str(Path(self.host.key_path).expanduser())
        try:
            client.connect(**connect_kwargs)
        except AuthenticationException as exc:
            raise ConnectionError(f"Authentication failed for {self.host.name}: {exc}") from exc
        except (SSHException, OSError) as exc:
            raise ConnectionError(f"SSH error for {self.host.name}: {exc}") from exc
        self._client = client

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    def reconnect(self) -> None:
        self.close()
        self.connect()

    @property
    def client(self) -> paramiko.SSHClient:
        if self._client is None:
            self.connect()
        assert self._client is not None
        return self._client

    def _execute(
        self,
        command: list[str],
        *,
        env: Optional[dict[str, str]],
        cwd: Optional[Union[str, Path]],
        timeout: Optional[float],
        input: Optional[str],
    ) -> CommandResult:
        argv = list(command)
        stdin_text = input or ""
        if env:
            for key, value in env.items():
                if "\n" in value:
                    raise ValueError(f"environment value for {key} must not contain newlines")
            prelude = "".join(f"{key}={value}\n" for key, value in env.items()) + "\n"
            argv = ["sh", "-c", _ENV_PRELUDE, "sh", *argv]
            stdin_text = prelude + stdin_text
        line = shlex.join(argv)
        if cwd is not None:
            line = f"cd {shlex.quote(str(cwd))} && {line}"
        if self.host.user != "root":
            line = f"sudo -n sh -c {shlex.quote(line)}"

        logger.debug("host=%s ssh-exec %s", self.host.name, shlex.join(command))
        stdin, stdout, stderr = self.client.exec_command(line, timeout=timeout)
        if stdin_text:
            stdin.write(stdin_text)
        stdin.channel.shutdown_write()
        returncode = stdout.channel.recv_exit_status()
        return CommandResult(
            command,
            stdout.read().decode("utf-8", errors="replace"),
            stderr.read().decode("utf-8", errors="replace"),
            returncode,
        )

    def read_file(self, path: Path) -> Optional[str]:
        result = self.run(["cat", str(path)], check=False, mutable=False)
        if result.returncode != 0:
            return None
        return result.stdout

    def _path_kind(self, path: Path) -> Optional[str]:
        kind = self.run(
            ["sh", "-c", _PATH_KIND_SCRIPT, "sh", str(path)], check=False, mutable=False
        )
        return kind.stdout.strip() or None

    def _write(self, path: Path, content: str) -> None:
        self.run(["mkdir", "-p", str(path.parent)])
        self.run(["sh", "-c", 'cat > "$1"', "sh", str(path)], input=content)

    def _make_dir(self, path: Path) -> None:
        self.run(["mkdir", "-p", str(path)])

    def _remove(self, path: Path) -> None:
        self.run(["rm", "-rf", str(path)])

    def _file_mode(self, path: Path) -> Optional[int]:
        result = self.run(["stat", "-c", "%a", str(path)], check=False, mutable=False)
        if result.returncode != 0:
            return None
        return int(result.stdout.strip(), 8)

    def _chmod(self, path: Path, mode: int) -> None:
        self.run(["chmod", f"{mode:04o}", str(path)])


def executor_for(host: HostConfig, *, dry_run: bool = False) -> Executor:
    if host.connection == "local":
        return LocalExecutor(host, dry_run=dry_run)
    if host.connection == "ssh":
        return SshExecutor(host, dry_run=dry_run)
    raise ValueError(f"Unknown connection type '{host.connection}'")
