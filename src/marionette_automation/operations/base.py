from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Mapping, Optional

from ..executors import Executor
from ..types import HostConfig


class Operation(ABC):
    """Shared surface for runnable automation actions.

    ``probe`` observes current state and returns it as facts, ``is_satisfied``
    decides from those facts alone whether anything needs doing, and
    ``apply`` performs the change and returns a short detail string.
    """

    # Operations that only report or publish facts never "change" a host.
    mutates_host = True
    always_run = False

    def __init__(self, spec: dict[str, Any]):
        self.spec = spec
        self.output = ""
        self.returncode: Optional[int] = None
        self.published: dict[str, Any] = {}
        # Bound by the converger to the play scope of the host being converged.
        self.lookup_variable: Optional[Callable[[str], Any]] = None

    def probe(self, host: HostConfig, executor: Executor) -> dict[str, Any]:
        return {}

    def is_satisfied(self, facts: Mapping[str, Any]) -> bool:
        return False

    @abstractmethod
    def apply(self, host: HostConfig, executor: Executor) -> str:
        """Perform the operation against ``host`` using ``executor``."""


def coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
        raise ValueError(f"Unable to interpret boolean value '{value}'")
    return bool(value)


def parse_mode(value: Any, default: Optional[int] = None) -> Optional[int]:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return default
    base = 8 if text.startswith("0") else 10
    return int(text, base)
