from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from .errors import PlanError, UnresolvedVariable

OPERATORS = ("equals", "not_equals", "matches", "contains", "in", "defined", "truthy")

_MISSING = object()


@dataclass
class Condition:
    """A typed comparison against a fact or a variable."""

    source: str
    key: str
    operator: str
    expected: Any

    @classmethod
    def parse(cls, spec: Any) -> list["Condition"]:
        if spec is None:
            return []
        items = spec if isinstance(spec, list) else [spec]
        conditions: list[Condition] = []
        for item in items:
            if not isinstance(item, dict):
                raise PlanError("conditions must be mappings like {fact = 'x', equals = 'y'}")
            if "fact" in item:
                source, key = "fact", str(item["fact"])
            elif "var" in item:
                source, key = "var", str(item["var"])
            else:
                raise PlanError("condition requires a 'fact' or 'var' key")
            operators = [op for op in OPERATORS if op in item]
            if len(operators) > 1:
                raise PlanError(f"condition on '{key}' mixes operators {', '.join(operators)}")
            operator = operators[0] if operators else "truthy"
            expected = item.get(operator, True)
            if operator == "matches":
                try:
                    re.compile(str(expected))
                except re.error as exc:
                    raise PlanError(f"condition on '{key}' has an invalid pattern: {exc}") from None
            if operator == "in" and not isinstance(expected, list):
                raise PlanError(f"condition 'in' on '{key}' expects a list")
            conditions.append(cls(source, key, operator, expected))
        return conditions

    def evaluate(
        self,
        facts: Mapping[str, Any],
        resolve: Optional[Callable[[str], Any]] = None,
    ) -> bool:
        value = self._lookup(facts, resolve)
        if self.operator == "defined":
            return (value is not _MISSING) == bool(self.expected)
        if value is _MISSING:
            return False
        if self.operator == "equals":
            return value == self.expected
        if self.operator == "not_equals":
            return value != self.expected
        if self.operator == "matches":
            return re.search(str(self.expected), str(value)) is not None
        if self.operator == "contains":
            if isinstance(value, (list, tuple, set, dict)):
                return self.expected in value
            return str(self.expected) in str(value)
        if self.operator == "in":
            return value in self.expected
        return bool(value) == bool(self.expected)

    def describe(self) -> str:
        return f"{self.source} {self.key} {self.operator} {self.expected!r}"

    def _lookup(self, facts: Mapping[str, Any], resolve: Optional[Callable[[str], Any]]) -> Any:
        if self.source == "fact":
            return facts.get(self.key, _MISSING)
        if resolve is None:
            return _MISSING
        try:
            return resolve(self.key)
        except UnresolvedVariable:
            return _MISSING


def all_hold(
    conditions: list[Condition],
    facts: Mapping[str, Any],
    resolve: Optional[Callable[[str], Any]] = None,
) -> bool:
    return all(condition.evaluate(facts, resolve) for condition in conditions)
