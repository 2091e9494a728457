from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Mapping, Optional

from .base import Operation, coerce_bool, parse_mode
from ..executors import Executor
from ..types import HostConfig


class LineOperation(Operation):
    """Ensure a single line is present in (or absent from) a text file.

    With ``regexp`` the last matching line is replaced by ``line``; when
    nothing matches the line is appended. ``state = "absent"`` drops every
    line matching ``regexp`` (or equal to ``line``).
    """

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_path = spec.get("path") or spec.get("name")
        if not raw_path:
            raise ValueError("line operation requires a path")
        self.path = Path(str(raw_path))
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("line operation state must be 'present' or 'absent'")
        raw_line = spec.get("line")
        self.line: Optional[str] = None if raw_line is None else str(raw_line)
        raw_regexp = spec.get("regexp")
        self.regexp = re.compile(str(raw_regexp)) if raw_regexp else None
        if self.state == "present" and self.line is None:
            raise ValueError("line operation requires 'line' when state=present")
        if self.state == "absent" and self.line is None and self.regexp is None:
            raise ValueError("line operation requires 'line' or 'regexp' when state=absent")
        self.create = coerce_bool(spec.get("create", True))
        self.mode = parse_mode(spec.get("mode"))

    @property
    def fact_key(self) -> str:
        return f"file.{self.path}.content"

    def probe(self, host: HostConfig, executor: Executor) -> dict[str, Any]:
        return {self.fact_key: executor.read_file(self.path)}

    def is_satisfied(self, facts: Mapping[str, Any]) -> bool:
        current = facts.get(self.fact_key)
        if current is None:
            return self.state == "absent" or not self.create
        return self.transform(current) == current

    def apply(self, host: HostConfig, executor: Executor) -> str:
        current = executor.read_file(self.path)
        if current is None and not self.create:
            raise FileNotFoundError(f"{self.path} does not exist and create is disabled")
        updated = self.transform(current or "")
        _, detail = executor.write_file(self.path, content=updated, mode=self.mode)
        self.published[self.fact_key] = updated
        return detail

    def transform(self, text: str) -> str:
        """Return ``text`` with the desired line state applied."""

        lines = text.splitlines()
        trailing_newline = text.endswith("\n") or not text
        if self.state == "absent":
            kept = [line for line in lines if not self._matches(line)]
            if len(kept) == len(lines):
                return text
            return self._join(kept, trailing_newline)

        assert self.line is not None
        if self.regexp is not None:
            matches = [idx for idx, line in enumerate(lines) if self.regexp.search(line)]
            if matches:
                idx = matches[-1]
                if lines[idx] == self.line:
                    return text
                lines[idx] = self.line
                return self._join(lines, trailing_newline)
        if self.line in lines:
            return text
        lines.append(self.line)
        return self._join(lines, True)

    def _matches(self, line: str) -> bool:
        if self.regexp is not None:
            return self.regexp.search(line) is not None
        return line == self.line

    @staticmethod
    def _join(lines: list[str], trailing_newline: bool) -> str:
        if not lines:
            return ""
        return "\n".join(lines) + ("\n" if trailing_newline else "")
