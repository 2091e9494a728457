from __future__ import annotations

import logging
import re
import tomllib
from pathlib import Path
from typing import Any, Optional

from .conditions import Condition
from .converge import resource_name
from .dsl import DSLParseError, DSLParser
from .errors import PlanError
from .operations.base import coerce_bool
from .types import ActionSpec, HandlerSpec, HostConfig, Plan, PlaySpec

logger = logging.getLogger(__name__)

CONNECTIONS = {"local", "ssh", "channel"}
CONNECTION_OPTIONS = {"user", "port", "identity_file", "ssh_args"}
FAILURE_POLICIES = {"abort", "continue"}
DESCRIPTOR_KEYS = {
    "id",
    "type",
    "notify",
    "register",
    "always_run",
    "become",
    "ignore_errors",
    "timeout",
    "when",
}


class InventoryLoader:
    """Loads plans from TOML or the block DSL and validates them."""

    INCLUDE_RE = re.compile(r"^include\s+['\"]([^'\"]+)['\"]\s*$")
    DSL_SUFFIXES = {".mar", ".pp"}

    def __init__(self, template_dir: Optional[Path] = None):
        self.template_dir = template_dir

    def load(self, path: Path, inventory: Optional[Path] = None) -> Plan:
        path = Path(path)
        raw = self._read_plan(path)
        if inventory is not None:
            self._merge_inventory(raw, self._read_toml(Path(inventory)))
        return self.build(raw, base_dir=path.parent)

    def _read_plan(self, path: Path) -> dict[str, Any]:
        suffix = path.suffix.lower()
        text: Optional[str] = None
        try:
            if suffix == ".toml":
                return self._read_toml(path)
            if suffix in self.DSL_SUFFIXES:
                text = self._read_with_includes(path)
                return DSLParser().parse_text(text)
            text = path.read_text()
            try:
                return DSLParser().parse_text(text)
            except DSLParseError:
                return self._read_toml(path)
        except DSLParseError as exc:
            location = f"{exc.line}:{exc.column}" if exc.line is not None else "?"
            message = f"{path}:{location} {exc}"
            snippet = self._line_snippet(text or "", exc.line)
            if snippet:
                message = f"{message} -> {snippet}"
            raise DSLParseError(message, line=exc.line, column=exc.column) from None

    @staticmethod
    def _read_toml(path: Path) -> dict[str, Any]:
        try:
            return tomllib.loads(path.read_text())
        except tomllib.TOMLDecodeError as exc:
            raise PlanError(f"{path}: {exc}") from None

    @staticmethod
    def _merge_inventory(raw: dict[str, Any], inventory: dict[str, Any]) -> None:
        for section in ("hosts", "groups"):
            if section in inventory:
                merged = dict(raw.get(section) or {})
                merged.update(inventory[section])
                raw[section] = merged
        if "defaults" in inventory:
            raw["defaults"] = {**inventory["defaults"], **(raw.get("defaults") or {})}

    def build(self, raw: dict[str, Any], base_dir: Optional[Path] = None) -> Plan:
        hosts = self._parse_hosts(raw.get("hosts") or {})
        groups = self._build_groups(raw.get("groups") or {}, hosts)
        defaults = dict(raw.get("defaults") or {})
        plays = [
            self._parse_play(play, index, hosts, groups)
            for index, play in enumerate(raw.get("plays") or [], start=1)
        ]
        plan = Plan(hosts=hosts, plays=plays, groups=groups, defaults=defaults)
        self._attach_dirs(plan, base_dir)
        logger.debug("plan hosts=%d groups=%d plays=%d", len(hosts), len(groups), len(plays))
        return plan

    @staticmethod
    def _parse_hosts(host_data: dict[str, Any]) -> dict[str, HostConfig]:
        if not host_data:
            host_data = {"local": {"connection": "local"}}
        hosts: dict[str, HostConfig] = {}
        for name, payload in host_data.items():
            if not isinstance(payload, dict):
                raise PlanError(f"Host '{name}' must be a table")
            connection = str(payload.get("connection", "local"))
            if connection not in CONNECTIONS:
                raise PlanError(f"Host '{name}' has unknown connection '{connection}'")
            groups = payload.get("groups", [])
            if isinstance(groups, str):
                groups = [groups]
            options = dict(payload.get("options") or {})
            options.update({k: payload[k] for k in CONNECTION_OPTIONS if k in payload})
            address = payload.get("address")
            hosts[name] = HostConfig(
                name=name,
                connection=connection,
                address=str(address) if address is not None else None,
                groups=[str(g) for g in groups],
                variables=dict(payload.get("variables") or {}),
                options=options,
            )
        return hosts

    @staticmethod
    def _build_groups(explicit: dict[str, Any], hosts: dict[str, HostConfig]) -> dict[str, list[str]]:
        """Explicit membership first, then hosts naming the group themselves."""

        groups: dict[str, list[str]] = {}
        for name, members in explicit.items():
            if isinstance(members, dict):
                members = members.get("hosts", [])
            if isinstance(members, str):
                members = [members]
            ordered = groups.setdefault(str(name), [])
            for member in members:
                if member not in hosts:
                    raise PlanError(f"Group '{name}' references unknown host '{member}'")
                if member not in ordered:
                    ordered.append(member)
        for host in hosts.values():
            for group in host.groups:
                ordered = groups.setdefault(group, [])
                if host.name not in ordered:
                    ordered.append(host.name)
        if "all" in groups:
            raise PlanError("Group name 'all' is reserved")
        for name, members in groups.items():
            for member in members:
                if name not in hosts[member].groups:
                    hosts[member].groups.append(name)
        return groups

    def _parse_play(
        self,
        raw: dict[str, Any],
        index: int,
        hosts: dict[str, HostConfig],
        groups: dict[str, list[str]],
    ) -> PlaySpec:
        name = str(raw.get("name") or f"play-{index}")
        target = raw.get("hosts", "all")
        if not isinstance(target, str):
            raise PlanError(f"Play '{name}' must target a single group or host name")
        if target != "all" and target not in groups and target not in hosts:
            raise PlanError(f"Play '{name}' targets unknown group or host '{target}'")
        policy = str(raw.get("failure_policy", "abort"))
        if policy not in FAILURE_POLICIES:
            raise PlanError(f"Play '{name}' has unknown failure_policy '{policy}'")
        play_vars = raw.get("vars") or {}
        if not isinstance(play_vars, dict):
            raise PlanError(f"Play '{name}' vars must be a table")

        raw_actions = raw.get("actions") or []
        raw_handlers = raw.get("handlers") or []
        actions = [
            self._parse_action(action, f"{name}#{pos}", pos)
            for pos, action in enumerate(raw_actions, start=1)
        ]
        handlers = [self._parse_handler(handler, name) for handler in raw_handlers]
        explicit = [bool(a.get("id")) for a in raw_actions] + [
            bool(h["action"].get("id")) for h in raw_handlers
        ]
        self._assign_ids(name, actions + [h.action for h in handlers], explicit)
        handler_names = [h.name for h in handlers]
        if len(set(handler_names)) != len(handler_names):
            raise PlanError(f"Play '{name}' declares a handler name twice")
        for action in actions + [h.action for h in handlers]:
            for target_name in action.notify:
                if target_name not in handler_names:
                    raise PlanError(f"Action '{action.id}' notifies unknown handler '{target_name}'")

        return PlaySpec(
            name=name,
            hosts=target,
            actions=actions,
            handlers=handlers,
            vars=dict(play_vars),
            become=coerce_bool(raw.get("become", False)),
            best_effort=coerce_bool(raw.get("best_effort", False)),
            failure_policy=policy,
        )

    @staticmethod
    def _assign_ids(play_name: str, actions: list[ActionSpec], explicit: list[bool]) -> None:
        """Reject repeated explicit ids; number repeated generated ones."""

        taken: set[str] = set()
        for action, declared in zip(actions, explicit):
            if not declared:
                continue
            if action.id in taken:
                raise PlanError(f"Play '{play_name}' declares action id '{action.id}' twice")
            taken.add(action.id)
        for action, declared in zip(actions, explicit):
            if declared:
                continue
            base, suffix = action.id, 2
            while action.id in taken:
                action.id = f"{base}#{suffix}"
                suffix += 1
            taken.add(action.id)

    def _parse_handler(self, raw: dict[str, Any], play_name: str) -> HandlerSpec:
        name = raw.get("name")
        if not name:
            raise PlanError(f"Play '{play_name}' has a handler without a name")
        action = raw.get("action")
        if not isinstance(action, dict):
            raise PlanError(f"Handler '{name}' requires an action table")
        spec = self._parse_action(action, f"{play_name}:{name}", 1)
        if "id" not in action:
            spec.id = f"handler.{name}"
        return HandlerSpec(name=str(name), action=spec)

    @staticmethod
    def _parse_action(raw: dict[str, Any], label: str, index: int) -> ActionSpec:
        if not isinstance(raw, dict):
            raise PlanError(f"Action {label} must be a table")
        action_type = raw.get("type")
        if not action_type:
            raise PlanError(f"Action {label} is missing a type")
        data = {k: v for k, v in raw.items() if k not in DESCRIPTOR_KEYS}

        notify = raw.get("notify", [])
        if isinstance(notify, str):
            notify = [notify]
        when = raw.get("when")
        if when is not None:
            Condition.parse(when)

        timeout = raw.get("timeout")
        try:
            timeout = float(timeout) if timeout is not None else None
        except (TypeError, ValueError):
            raise PlanError(f"Action {label} timeout must be numeric") from None

        identifier = raw.get("id")
        if not identifier:
            resource = resource_name(data)
            identifier = f"{action_type}.{resource}" if resource else f"{action_type}.__{index}"

        def _flag(key: str) -> Optional[bool]:
            if raw.get(key) is None:
                return None
            try:
                return coerce_bool(raw[key])
            except ValueError as exc:
                raise PlanError(f"Action {label}: {exc}") from None

        return ActionSpec(
            type=str(action_type),
            data=data,
            id=str(identifier),
            notify=[str(n) for n in notify],
            register=str(raw["register"]) if raw.get("register") else None,
            always_run=_flag("always_run"),
            become=_flag("become"),
            ignore_errors=bool(_flag("ignore_errors")),
            timeout=timeout,
            when=when,
        )

    def _attach_dirs(self, plan: Plan, base_dir: Optional[Path]) -> None:
        for play in plan.plays:
            for action in play.actions + [h.action for h in play.handlers]:
                if base_dir is not None:
                    action.data.setdefault("_plan_dir", str(base_dir))
                if self.template_dir is not None:
                    action.data.setdefault("_template_dir", str(self.template_dir))

    def _read_with_includes(self, path: Path, seen: Optional[set[Path]] = None) -> str:
        seen = seen or set()
        real = path.resolve()
        if real in seen:
            raise PlanError(f"Recursive include detected for {path}")
        seen.add(real)
        lines: list[str] = []
        for line in path.read_text().splitlines():
            match = self.INCLUDE_RE.match(line.strip())
            if match:
                lines.append(self._read_with_includes(path.parent / match.group(1), seen))
            else:
                lines.append(line)
        return "\n".join(lines)

    @staticmethod
    def _line_snippet(text: str, line_number: Optional[int]) -> str:
        if line_number is None:
            return ""
        lines = text.splitlines()
        idx = line_number - 1
        if 0 <= idx < len(lines):
            return lines[idx].strip()
        return ""
