from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

from .base import Operation, coerce_bool
from ..errors import ApplyFailure
from ..executors import CommandResult, Executor
from ..types import HostConfig

logger = logging.getLogger(__name__)


class ExecOperation(Operation):
    """Run arbitrary commands with simple guards, mirroring Puppet's exec.

    Without ``creates``, ``only_if`` or ``unless`` there is nothing to probe
    and the command runs every time. ``changes = false`` marks read-only
    commands (version checks and the like) whose output is only registered.
    """

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_command = spec.get("command") or spec.get("cmd")
        if raw_command is None:
            raise ValueError("exec operation requires a command")
        self.raw_command = raw_command
        self.name = str(spec.get("name") or self._format_command(self._normalize_command(raw_command)))

        self.only_if = spec.get("only_if")
        self.unless = spec.get("unless")
        self.creates = Path(str(spec["creates"])) if spec.get("creates") else None
        self.cwd = Path(str(spec["cwd"])) if spec.get("cwd") else None

        self.env = self._normalize_env(spec.get("env") or spec.get("environment"))
        self.allowed_returns = self._normalize_returns(spec.get("returns", [0]))
        self.timeout = self._normalize_timeout(spec.get("timeout"))
        self.mutates_host = coerce_bool(spec.get("changes", True))

    @property
    def guarded(self) -> bool:
        return bool(self.creates or self.only_if or self.unless)

    def probe(self, host: HostConfig, executor: Executor) -> dict[str, Any]:
        if not self.guarded:
            return {}
        return {f"exec.{self.name}.guard": self._guard_reason(executor)}

    def is_satisfied(self, facts: Mapping[str, Any]) -> bool:
        if not self.guarded:
            return False
        return facts.get(f"exec.{self.name}.guard") is not None

    def apply(self, host: HostConfig, executor: Executor) -> str:
        command = self._normalize_command(self.raw_command)
        result = executor.run(
            command,
            check=False,
            mutable=True,
            env=self.env,
            cwd=self.cwd,
            timeout=self.timeout,
        )
        self.output = result.stdout
        self.returncode = result.returncode

        if result.returncode not in self.allowed_returns:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(
                    "exec failed name=%s rc=%s cmd=%s",
                    self.name,
                    result.returncode,
                    self._format_command(command),
                )
            raise ApplyFailure(self._error_detail(result))

        return "dry-run" if executor.dry_run else f"ran (rc={result.returncode})"

    def _guard_reason(self, executor: Executor) -> Optional[str]:
        """Return why the command can be skipped, or ``None`` if it must run."""

        if self.creates:
            creates_path = self._resolve_path(self.creates)
            if executor.path_kind(creates_path) != "absent":
                return f"creates {creates_path}"

        if self.only_if:
            guard = self._run_guard(self._normalize_command(self.only_if), executor)
            if guard.returncode != 0:
                return f"only_if rc={guard.returncode}"

        if self.unless:
            guard = self._run_guard(self._normalize_command(self.unless), executor)
            if guard.returncode == 0:
                return f"unless rc={guard.returncode}"
        return None

    def _run_guard(self, command: Sequence[str], executor: Executor) -> CommandResult:
        return executor.run(
            command,
            check=False,
            mutable=False,
            env=self.env,
            cwd=self.cwd,
            timeout=self.timeout,
        )

    def _resolve_path(self, path: Path) -> Path:
        if path.is_absolute() or self.cwd is None:
            return path
        return self.cwd / path

    @staticmethod
    def _normalize_command(value: Any) -> list[str]:
        if isinstance(value, str):
            return ["sh", "-c", value]
        if isinstance(value, Sequence):
            return [str(v) for v in value]
        raise ValueError("exec command must be a string or list")

    @staticmethod
    def _format_command(command: Sequence[str]) -> str:
        return " ".join(command)

    @staticmethod
    def _normalize_env(value: Any) -> Optional[dict[str, str]]:
        if value is None:
            return None
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        if isinstance(value, Iterable) and not isinstance(value, (str, bytes)):
            env: dict[str, str] = {}
            for item in value:
                key, sep, val = str(item).partition("=")
                if not sep:
                    raise ValueError("env list entries must be KEY=VALUE")
                env[key] = val
            return env
        raise ValueError("exec env must be a mapping or list of KEY=VALUE strings")

    @staticmethod
    def _normalize_returns(value: Any) -> list[int]:
        if value is None:
            return [0]
        if isinstance(value, int):
            return [int(value)]
        if isinstance(value, Iterable):
            return [int(v) for v in value]
        raise ValueError("exec returns must be an int or list of ints")

    @staticmethod
    def _normalize_timeout(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError) as exc:  # noqa: PERF203
            raise ValueError("exec timeout must be numeric") from exc

    @staticmethod
    def _error_detail(result: CommandResult) -> str:
        message = ExecOperation._summarize_output(result)
        prefix = f"rc={result.returncode}"
        if message:
            return f"{prefix}: {message}"
        return prefix

    @staticmethod
    def _summarize_output(result: CommandResult) -> Optional[str]:
        for text in (result.stderr, result.stdout):
            if not text:
                continue
            stripped = text.strip()
            if not stripped:
                continue
            line = stripped.splitlines()[0]
            return (line[:157] + "...") if len(line) > 160 else line
        return None
