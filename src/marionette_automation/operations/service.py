from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .base import Operation, coerce_bool
from ..errors import ProbeFailure
from ..executors import Executor
from ..types import HostConfig

logger = logging.getLogger(__name__)


@dataclass
class SystemCtl:
    executable: str = "systemctl"

    def available(self, executor: Executor) -> bool:
        return executor.which(self.executable)

    def is_enabled(self, executor: Executor, service: str) -> bool:
        result = executor.run([self.executable, "is-enabled", service], check=False, mutable=False)
        return result.returncode == 0

    def is_active(self, executor: Executor, service: str) -> bool:
        result = executor.run([self.executable, "is-active", service], check=False, mutable=False)
        return result.returncode == 0

    def enable(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "enable", service])

    def disable(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "disable", service])

    def start(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "start", service])

    def stop(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "stop", service])

    def restart(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "restart", service])

    def reload(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "reload", service])


class ServiceOperation(Operation):
    """Manage systemd services."""

    STATES = {None, "running", "stopped", "restarted", "reloaded"}

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_name = spec.get("name") or spec.get("service")
        if not raw_name:
            raise ValueError("service operation requires a name")
        self.name = str(raw_name)
        enabled = spec.get("enabled")
        self._enabled: Optional[bool] = None if enabled is None else coerce_bool(enabled)
        self._state = spec.get("state")
        if self._state not in self.STATES:
            raise ValueError("service state must be 'running', 'stopped', 'restarted' or 'reloaded'")
        self.systemctl = SystemCtl()

    def probe(self, host: HostConfig, executor: Executor) -> dict[str, Any]:
        if not self.systemctl.available(executor):
            raise ProbeFailure(f"systemctl is not available on {host.name}")
        return {
            f"service.{self.name}.active": self.systemctl.is_active(executor, self.name),
            f"service.{self.name}.enabled": self.systemctl.is_enabled(executor, self.name),
        }

    def is_satisfied(self, facts: Mapping[str, Any]) -> bool:
        if self._state in {"restarted", "reloaded"}:
            return False
        if self._enabled is not None and facts.get(f"service.{self.name}.enabled") != self._enabled:
            return False
        if self._state == "running" and facts.get(f"service.{self.name}.active") is not True:
            return False
        if self._state == "stopped" and facts.get(f"service.{self.name}.active") is not False:
            return False
        return True

    def apply(self, host: HostConfig, executor: Executor) -> str:
        changes: list[str] = []

        if self._enabled is not None:
            enabled = self.systemctl.is_enabled(executor, self.name)
            if self._enabled and not enabled:
                logger.debug("Enabling service %s", self.name)
                self.systemctl.enable(executor, self.name)
                changes.append("enabled")
            elif not self._enabled and enabled:
                logger.debug("Disabling service %s", self.name)
                self.systemctl.disable(executor, self.name)
                changes.append("disabled")

        desired = self._state
        if desired == "restarted":
            logger.debug("Restarting service %s", self.name)
            self.systemctl.restart(executor, self.name)
            changes.append("restarted")
        elif desired == "reloaded":
            logger.debug("Reloading service %s", self.name)
            self.systemctl.reload(executor, self.name)
            changes.append("reloaded")
        elif desired is not None:
            active = self.systemctl.is_active(executor, self.name)
            if desired == "running" and not active:
                logger.debug("Starting service %s", self.name)
                self.systemctl.start(executor, self.name)
                changes.append("started")
            elif desired == "stopped" and active:
                logger.debug("Stopping service %s", self.name)
                self.systemctl.stop(executor, self.name)
                changes.append("stopped")

        if desired in {"running", "restarted", "reloaded"}:
            self.published[f"service.{self.name}.active"] = True
        elif desired == "stopped":
            self.published[f"service.{self.name}.active"] = False
        if self._enabled is not None:
            self.published[f"service.{self.name}.enabled"] = self._enabled
        return ", ".join(changes) if changes else "noop"
