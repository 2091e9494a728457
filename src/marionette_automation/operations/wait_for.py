from __future__ import annotations

import logging
import time
from typing import Any, Mapping, Optional

from .base import Operation
from ..errors import ApplyFailure, CommandTimeout
from ..executors import Executor
from ..types import HostConfig

logger = logging.getLogger(__name__)


class WaitForOperation(Operation):
    """Block until a TCP port (or an HTTP endpoint) on the host is ready.

    Checks run on the managed host itself: ``bash``'s ``/dev/tcp`` for
    ports, ``curl`` for URLs. A port can also be waited on to close with
    ``state = "stopped"``.
    """

    mutates_host = False
    STATES = {"started", "stopped"}

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.url = str(spec["url"]) if spec.get("url") else None
        self.port = self._int(spec.get("port"), "port") if spec.get("port") is not None else None
        if (self.url is None) == (self.port is None):
            raise ValueError("wait_for requires exactly one of 'port' or 'url'")
        self.address = str(spec.get("host") or "127.0.0.1")
        self.state = str(spec.get("state") or "started")
        if self.state not in self.STATES:
            raise ValueError(f"wait_for state must be one of {', '.join(sorted(self.STATES))}")
        if self.url and self.state != "started":
            raise ValueError("wait_for can only wait for a URL to start answering")
        self.status = self._int(spec.get("status", 200), "status")
        self.timeout = float(spec.get("timeout", 300))
        self.delay = float(spec.get("delay", 0))
        self.interval = float(spec.get("interval", 1))
        self.connect_timeout = float(spec.get("connect_timeout", 5))
        self.target = self.url or f"{self.address}:{self.port}"

    @property
    def fact(self) -> str:
        return f"wait_for.{self.target}.ready"

    def probe(self, host: HostConfig, executor: Executor) -> dict[str, Any]:
        return {self.fact: self._ready(executor)}

    def is_satisfied(self, facts: Mapping[str, Any]) -> bool:
        return facts.get(self.fact) is (self.state == "started")

    def apply(self, host: HostConfig, executor: Executor) -> str:
        if executor.dry_run:
            return f"would wait for {self.target} (dry-run)"
        if self.delay:
            time.sleep(self.delay)
        wanted = self.state == "started"
        started = time.monotonic()
        while True:
            ready = self._ready(executor)
            waited = time.monotonic() - started
            if ready is wanted:
                self.published[self.fact] = ready
                return f"{self.state} after {waited:.0f}s"
            if waited >= self.timeout:
                raise ApplyFailure(f"timed out after {self.timeout:.0f}s waiting for {self.target} to be {self.state}")
            logger.debug("host=%s waiting for %s (%.0fs)", host.name, self.target, waited)
            time.sleep(self.interval)

    def _ready(self, executor: Executor) -> bool:
        if self.url:
            command = ["curl", "-s", "-o", "/dev/null", "-w", "%{http_code}", self.url]
        else:
            command = ["bash", "-c", 'exec 3<>"/dev/tcp/$0/$1"', self.address, str(self.port)]
        try:
            result = executor.run(command, check=False, mutable=False, timeout=self.connect_timeout)
        except CommandTimeout:
            return False
        if self.url:
            return result.stdout.strip() == str(self.status)
        return result.returncode == 0

    @staticmethod
    def _int(value: Any, label: str) -> int:
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValueError(f"wait_for {label} must be an integer") from None
