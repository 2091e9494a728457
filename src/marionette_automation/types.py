from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class HostConfig:
    name: str
    connection: str = "local"
    address: Optional[str] = None
    groups: list[str] = field(default_factory=list)
    variables: dict[str, Any] = field(default_factory=dict)
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class ActionSpec:
    type: str
    data: dict[str, Any]
    id: Optional[str] = None
    notify: list[str] = field(default_factory=list)
    register: Optional[str] = None
    always_run: Optional[bool] = None
    become: Optional[bool] = None
    ignore_errors: bool = False
    timeout: Optional[float] = None
    when: Optional[Any] = None


@dataclass
class HandlerSpec:
    name: str
    action: ActionSpec


@dataclass
class PlaySpec:
    name: str
    hosts: str
    actions: list[ActionSpec]
    handlers: list[HandlerSpec] = field(default_factory=list)
    vars: dict[str, Any] = field(default_factory=dict)
    become: bool = False
    best_effort: bool = False
    failure_policy: str = "abort"


@dataclass
class Plan:
    hosts: dict[str, HostConfig]
    plays: list[PlaySpec]
    groups: dict[str, list[str]] = field(default_factory=dict)
    defaults: dict[str, Any] = field(default_factory=dict)

    def members(self, target: str) -> list[str]:
        """Return the ordered host names a play ``target`` refers to."""

        if target == "all":
            return list(self.hosts)
        if target in self.groups:
            return list(self.groups[target])
        if target in self.hosts:
            return [target]
        return []


@dataclass
class ActionResult:
    host: str
    action: str
    changed: bool
    details: str
    failed: bool = False
    resource: Optional[str] = None
    skipped: bool = False
    output: str = ""
    error: Optional[str] = None
    ignored: bool = False
    action_id: Optional[str] = None
    play: Optional[str] = None

    @property
    def status(self) -> str:
        if self.failed:
            return "failed"
        if self.skipped:
            return "skipped"
        if self.changed:
            return "changed"
        return "unchanged"
