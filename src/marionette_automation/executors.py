from __future__ import annotations

import base64
import copy
import logging
import os
import shlex
import shutil
import stat
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Sequence, Union

from .errors import CommandTimeout
from .types import HostConfig

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    command: list[str]
    stdout: str
    stderr: str
    returncode: int


class RemoteChannel(Protocol):
    """The only way the engine reaches a remote host."""

    def execute(
        self,
        host: HostConfig,
        command: Sequence[str],
        *,
        as_superuser: bool,
        timeout: Optional[float],
    ) -> CommandResult:
        ...


class Executor:
    """Base executor abstraction used by operations."""

    def __init__(
        self,
        host: HostConfig,
        *,
        dry_run: bool = False,
        become: bool = False,
        timeout: Optional[float] = None,
    ):
        self.host = host
        self.dry_run = dry_run
        self.become = become
        self.timeout = timeout

    def configured(self, *, become: Optional[bool] = None, timeout: Optional[float] = None) -> "Executor":
        """Return a copy with per-action privilege and timeout settings."""

        clone = copy.copy(self)
        if become is not None:
            clone.become = become
        if timeout is not None:
            clone.timeout = timeout
        return clone

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        mutable: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run ``command`` and optionally skip it during dry-runs."""

        cmd_list = [str(part) for part in command]
        if self.dry_run and mutable:
            return CommandResult(cmd_list, "", "skipped (dry-run)", 0)

        effective_timeout = timeout if timeout is not None else self.timeout
        logger.debug("host=%s become=%s cmd=%s", self.host.name, self.become, shlex.join(cmd_list))
        result = self._execute(cmd_list, env=env, cwd=cwd, timeout=effective_timeout)
        if check and result.returncode != 0:
            raise subprocess.CalledProcessError(
                result.returncode,
                cmd_list,
                result.stdout,
                result.stderr,
            )
        return result

    def which(self, binary: str) -> bool:
        result = self.run(
            ["sh", "-c", f"command -v {shlex.quote(binary)}"],
            check=False,
            mutable=False,
        )
        return result.returncode == 0

    def _execute(
        self,
        command: list[str],
        *,
        env: Optional[dict[str, str]],
        cwd: Optional[Union[str, Path]],
        timeout: Optional[float],
    ) -> CommandResult:
        raise NotImplementedError

    # File primitives -----------------------------------------------------
    def read_file(self, path: Path) -> Optional[str]:
        raise NotImplementedError

    def path_kind(self, path: Path) -> str:
        """Return ``file``, ``directory``, ``link`` or ``absent``."""
        raise NotImplementedError

    def file_mode(self, path: Path) -> Optional[int]:
        raise NotImplementedError

    def read_link(self, path: Path) -> Optional[str]:
        raise NotImplementedError

    def remove_path(self, path: Path) -> bool:
        raise NotImplementedError

    def make_link(self, target: str, path: Path) -> None:
        raise NotImplementedError

    def _write_text(self, path: Path, content: str) -> None:
        raise NotImplementedError

    def _make_directory(self, path: Path) -> None:
        raise NotImplementedError

    def _chmod(self, path: Path, mode: int) -> None:
        raise NotImplementedError

    def write_file(self, path: Path, *, content: str, mode: Optional[int]) -> tuple[bool, str]:
        current = self.read_file(path)
        changed = False
        reasons: list[str] = []

        if current != content:
            changed = True
            reasons.append("content")
            if not self.dry_run:
                self._write_text(path, content)

        if mode is not None and self._converge_mode(path, mode):
            changed = True
            reasons.append(f"mode->{mode:04o}")
        detail = ", ".join(reasons) if reasons else "noop"
        return changed, detail

    def ensure_directory(self, path: Path, *, mode: Optional[int]) -> tuple[bool, str]:
        changed = False
        reasons: list[str] = []

        kind = self.path_kind(path)
        if kind == "absent":
            changed = True
            reasons.append("created")
            if not self.dry_run:
                self._make_directory(path)
        elif kind != "directory":
            changed = True
            reasons.append("replaced-non-dir")
            if not self.dry_run:
                self.remove_path(path)
                self._make_directory(path)

        if mode is not None and self._converge_mode(path, mode):
            changed = True
            reasons.append(f"mode->{mode:04o}")
        detail = ", ".join(reasons) if reasons else "noop"
        return changed, detail

    def _converge_mode(self, path: Path, mode: int) -> bool:
        if self.file_mode(path) == mode:
            return False
        # ``chmod`` fails if the path is absent, which only happens in dry-run.
        if not self.dry_run and self.path_kind(path) != "absent":
            self._chmod(path, mode)
        return True


class LocalExecutor(Executor):
    """Executor that acts directly on the control host."""

    def _execute(
        self,
        command: list[str],
        *,
        env: Optional[dict[str, str]],
        cwd: Optional[Union[str, Path]],
        timeout: Optional[float],
    ) -> CommandResult:
        argv = list(command)
        if self.become and os.geteuid() != 0:
            argv = ["sudo", "-n", *argv]

        exec_env = None
        if env:
            exec_env = os.environ.copy()
            exec_env.update(env)

        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                check=False,
                env=exec_env,
                cwd=str(cwd) if cwd is not None else None,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise CommandTimeout(command, timeout) from None
        except FileNotFoundError as exc:
            return CommandResult(command, "", str(exc), 127)
        return CommandResult(command, proc.stdout, proc.stderr, proc.returncode)

    def read_file(self, path: Path) -> Optional[str]:
        try:
            return path.read_text()
        except FileNotFoundError:
            return None

    def path_kind(self, path: Path) -> str:
        if path.is_symlink():
            return "link"
        if path.is_dir():
            return "directory"
        if path.exists():
            return "file"
        return "absent"

    def file_mode(self, path: Path) -> Optional[int]:
        try:
            return stat.S_IMODE(path.stat().st_mode)
        except FileNotFoundError:
            return None

    def read_link(self, path: Path) -> Optional[str]:
        try:
            return os.readlink(path)
        except OSError:
            return None

    def remove_path(self, path: Path) -> bool:
        if not path.exists() and not path.is_symlink():
            return False
        if self.dry_run:
            return True
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
        return True

    def make_link(self, target: str, path: Path) -> None:
        if self.dry_run:
            return
        self.remove_path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        os.symlink(target, path)

    def _write_text(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)

    def _make_directory(self, path: Path) -> None:
        path.mkdir(parents=True, exist_ok=True)

    def _chmod(self, path: Path, mode: int) -> None:
        os.chmod(path, mode)


class ChannelExecutor(Executor):
    """Executor that lowers every call to a :class:`RemoteChannel`."""

    _KIND_SCRIPT = (
        'if [ -L "$0" ]; then echo link; elif [ -d "$0" ]; then echo directory; '
        'elif [ -e "$0" ]; then echo file; else echo absent; fi'
    )
    _WRITE_SCRIPT = 'mkdir -p "$(dirname "$0")" && printf %s "$1" | base64 -d > "$0"'

    def __init__(self, host: HostConfig, channel: RemoteChannel, **kwargs):
        super().__init__(host, **kwargs)
        self.channel = channel

    def _execute(
        self,
        command: list[str],
        *,
        env: Optional[dict[str, str]],
        cwd: Optional[Union[str, Path]],
        timeout: Optional[float],
    ) -> CommandResult:
        argv = list(command)
        if env:
            argv = ["env", *[f"{key}={value}" for key, value in env.items()], *argv]
        if cwd is not None:
            argv = ["sh", "-c", 'cd "$0" && exec "$@"', str(cwd), *argv]
        result = self.channel.execute(self.host, argv, as_superuser=self.become, timeout=timeout)
        return CommandResult(command, result.stdout, result.stderr, result.returncode)

    def read_file(self, path: Path) -> Optional[str]:
        if self.path_kind(path) == "absent":
            return None
        result = self.run(["cat", "--", str(path)], check=False, mutable=False)
        if result.returncode != 0:
            raise RuntimeError(f"unable to read {path}: {result.stderr.strip()}")
        return result.stdout

    def path_kind(self, path: Path) -> str:
        result = self.run(["sh", "-c", self._KIND_SCRIPT, str(path)], mutable=False)
        return result.stdout.strip() or "absent"

    def file_mode(self, path: Path) -> Optional[int]:
        result = self.run(["stat", "-c", "%a", str(path)], check=False, mutable=False)
        if result.returncode != 0:
            return None
        return int(result.stdout.strip(), 8)

    def read_link(self, path: Path) -> Optional[str]:
        result = self.run(["readlink", "--", str(path)], check=False, mutable=False)
        if result.returncode != 0:
            return None
        return result.stdout.rstrip("\n")

    def remove_path(self, path: Path) -> bool:
        if self.path_kind(path) == "absent":
            return False
        self.run(["rm", "-rf", "--", str(path)])
        return True

    def make_link(self, target: str, path: Path) -> None:
        self.run(["mkdir", "-p", str(path.parent)])
        self.run(["ln", "-sfn", target, str(path)])

    def _write_text(self, path: Path, content: str) -> None:
        encoded = base64.b64encode(content.encode()).decode()
        self.run(["sh", "-c", self._WRITE_SCRIPT, str(path), encoded])

    def _make_directory(self, path: Path) -> None:
        self.run(["mkdir", "-p", str(path)])

    def _chmod(self, path: Path, mode: int) -> None:
        self.run(["chmod", f"{mode:04o}", str(path)])


class SshChannel:
    """Channel backed by the OpenSSH client binary."""

    def __init__(self, *, executable: str = "ssh", connect_timeout: int = 10):
        self.executable = executable
        self.connect_timeout = connect_timeout

    def execute(
        self,
        host: HostConfig,
        command: Sequence[str],
        *,
        as_superuser: bool,
        timeout: Optional[float],
    ) -> CommandResult:
        argv = self._ssh_argv(host)
        remote = shlex.join(list(command))
        if as_superuser:
            remote = f"sudo -n {remote}"
        argv.append(remote)
        try:
            proc = subprocess.run(argv, capture_output=True, text=True, check=False, timeout=timeout)
        except subprocess.TimeoutExpired:
            raise CommandTimeout(list(command), timeout) from None
        return CommandResult(list(command), proc.stdout, proc.stderr, proc.returncode)

    def _ssh_argv(self, host: HostConfig) -> list[str]:
        options = host.options
        argv = [
            self.executable,
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={self.connect_timeout}",
        ]
        if options.get("port"):
            argv.extend(["-p", str(options["port"])])
        if options.get("identity_file"):
            argv.extend(["-i", str(options["identity_file"])])
        extra = options.get("ssh_args") or []
        if isinstance(extra, str):
            extra = shlex.split(extra)
        argv.extend(str(arg) for arg in extra)
        target = host.address or host.name
        if options.get("user"):
            target = f"{options['user']}@{target}"
        argv.append(target)
        return argv
