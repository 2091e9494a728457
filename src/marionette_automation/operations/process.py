from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping, Optional

from .base import Operation, coerce_bool
from ..errors import ProbeFailure
from ..executors import Executor
from ..types import HostConfig

logger = logging.getLogger(__name__)


class ProcessOperation(Operation):
    """Keep an application process running under pm2 with a given environment."""

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_name = spec.get("name")
        if not raw_name:
            raise ValueError("process operation requires a name")
        self.name = str(raw_name)
        self.state = str(spec.get("state", "running"))
        if self.state not in {"running", "absent"}:
            raise ValueError("process state must be 'running' or 'absent'")
        self.script = spec.get("script")
        if self.state == "running" and not self.script:
            raise ValueError("process operation requires a script when state=running")
        self.cwd = Path(str(spec["cwd"])) if spec.get("cwd") else None
        raw_env = spec.get("env") or {}
        if not isinstance(raw_env, dict):
            raise ValueError("process env must be a mapping")
        self.env = {str(k): str(v) for k, v in raw_env.items()}
        self.executable = str(spec.get("executable", "pm2"))
        self.save = coerce_bool(spec.get("save", False))

    def probe(self, host: HostConfig, executor: Executor) -> dict[str, Any]:
        entry = self._describe(executor)
        status: Optional[str] = None
        env: dict[str, Optional[str]] = {}
        if entry is not None:
            pm2_env = entry.get("pm2_env") or {}
            status = pm2_env.get("status")
            merged = {**pm2_env, **(pm2_env.get("env") or {})}
            env = {key: _as_text(merged.get(key)) for key in self.env}
        return {
            f"process.{self.name}.status": status,
            f"process.{self.name}.env": env,
        }

    def is_satisfied(self, facts: Mapping[str, Any]) -> bool:
        status = facts.get(f"process.{self.name}.status")
        if self.state == "absent":
            return status is None
        if status != "online":
            return False
        return facts.get(f"process.{self.name}.env") == self.env

    def apply(self, host: HostConfig, executor: Executor) -> str:
        removed = executor.run([self.executable, "delete", self.name], check=False)
        if self.state == "absent":
            self.published[f"process.{self.name}.status"] = None
            return "deleted" if removed.returncode == 0 else "noop"

        logger.debug("Starting process %s script=%s env=%s", self.name, self.script, sorted(self.env))
        result = executor.run(
            [self.executable, "start", str(self.script), "--name", self.name, "--update-env"],
            env=self.env or None,
            cwd=self.cwd,
        )
        self.output = result.stdout
        self.returncode = result.returncode
        if self.save:
            executor.run([self.executable, "save"])
        self.published[f"process.{self.name}.status"] = "online"
        self.published[f"process.{self.name}.env"] = dict(self.env)
        return "restarted" if removed.returncode == 0 else "started"

    def _describe(self, executor: Executor) -> Optional[dict[str, Any]]:
        result = executor.run([self.executable, "jlist"], check=False, mutable=False)
        if result.returncode != 0:
            raise ProbeFailure(f"{self.executable} jlist rc={result.returncode}: {result.stderr.strip()}")
        try:
            processes = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise ProbeFailure(f"{self.executable} jlist returned invalid JSON: {exc}") from exc
        for entry in processes:
            if entry.get("name") == self.name:
                return entry
        return None


def _as_text(value: Any) -> Optional[str]:
    return None if value is None else str(value)
