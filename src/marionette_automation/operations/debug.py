from __future__ import annotations

from typing import Any, Mapping

from .base import Operation
from ..conditions import Condition, all_hold
from ..errors import ApplyFailure
from ..executors import Executor
from ..types import HostConfig


class DebugOperation(Operation):
    """Report a (rendered) message without touching the host."""

    mutates_host = False
    always_run = True

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        message = spec.get("msg", spec.get("message", ""))
        if isinstance(message, list):
            message = "\n".join(str(line) for line in message)
        self.message = str(message)

    def apply(self, host: HostConfig, executor: Executor) -> str:
        self.output = self.message
        return self.message.splitlines()[0] if self.message else "noop"


class SetFactOperation(Operation):
    """Publish computed values as facts of the current host."""

    mutates_host = False
    always_run = True

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        facts = spec.get("facts")
        if not isinstance(facts, dict) or not facts:
            raise ValueError("set_fact requires a non-empty 'facts' mapping")
        self.facts = dict(facts)

    def apply(self, host: HostConfig, executor: Executor) -> str:
        self.published.update(self.facts)
        return "facts=" + ",".join(sorted(self.facts))


class AssertOperation(Operation):
    """Verify facts; the assertion holding is the satisfied state."""

    mutates_host = False

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        self.conditions = Condition.parse(spec.get("that"))
        if not self.conditions:
            raise ValueError("assert requires at least one condition in 'that'")
        self.message = str(spec.get("msg") or "assertion failed")

    def is_satisfied(self, facts: Mapping[str, Any]) -> bool:
        return all_hold(self.conditions, facts, self.lookup_variable)

    def apply(self, host: HostConfig, executor: Executor) -> str:
        raise ApplyFailure(self.message)
