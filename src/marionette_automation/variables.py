"""Variable resolution across host-local, play and cross-group scopes.

A play binds variables in its ``vars`` table. Literal values override
everything else for that play. A value of the form
``{group = "db", fact = "address"}`` is a cross-group reference: it reads a
fact published by the *primary* (first) host of another group, which is how
the application tier learns the database tier's address. References are
checked when the play is scheduled so that a missing or failed dependency
stops the play instead of rendering an empty value.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from string import Template
from typing import Any, Iterator, Optional

from .errors import UnresolvedVariable
from .facts import FactStore
from .secrets import SecretResolver, is_secret_reference
from .types import HostConfig, Plan, PlaySpec

logger = logging.getLogger(__name__)

_WHOLE_PLACEHOLDER = re.compile(r"\$\{([^{}$]+)\}")


class VariableTemplate(Template):
    """Only ``${name}`` is substituted; bare ``$name`` is left alone.

    Rendered files (nginx configs, shell snippets) are full of ``$var``
    tokens that belong to other programs.
    """

    pattern = r"""
    \$(?:
      (?P<escaped>\$) |
      \{(?P<braced>[_a-z][_a-z0-9-]*(?:\.[_a-z0-9-]+)*)\} |
      (?P<named>(?!)) |
      (?P<invalid>(?!))
    )
    """


def is_group_reference(value: Any) -> bool:
    return isinstance(value, dict) and "group" in value


class VariableResolver:
    def __init__(
        self,
        plan: Plan,
        facts: FactStore,
        *,
        secret_resolver: Optional[SecretResolver] = None,
    ):
        self.plan = plan
        self.facts = facts
        self.secret_resolver = secret_resolver or SecretResolver()
        self.failed_hosts: set[str] = set()

    def mark_failed(self, hosts: set[str]) -> None:
        self.failed_hosts.update(hosts)

    def scope(self, play: PlaySpec) -> "PlayScope":
        """Bind ``play``'s variables, failing if a cross-group edge is broken."""

        overrides: dict[str, Any] = {}
        references: dict[str, dict[str, Any]] = {}
        for name, value in play.vars.items():
            if is_group_reference(value):
                references[name] = value
            else:
                overrides[name] = value
        for name, reference in references.items():
            self.lookup_reference(name, reference)
            logger.debug("play=%s variable=%s bound to group=%s", play.name, name, reference["group"])
        return PlayScope(self, play, overrides, references)

    def primary_host(self, group: str) -> str:
        members = self.plan.groups.get(group)
        if members is None:
            raise UnresolvedVariable(group, f"group '{group}' is not defined")
        if not members:
            raise UnresolvedVariable(group, f"group '{group}' has no hosts")
        return members[0]

    def lookup_reference(self, name: str, reference: dict[str, Any]) -> Any:
        group = str(reference["group"])
        key = str(reference.get("fact") or name)
        try:
            primary = self.primary_host(group)
        except UnresolvedVariable as exc:
            raise UnresolvedVariable(name, exc.reason) from None
        if primary in self.failed_hosts:
            raise UnresolvedVariable(
                name, f"primary host '{primary}' of group '{group}' failed in an earlier play"
            )
        if not self.facts.has(primary, key):
            raise UnresolvedVariable(
                name, f"fact '{key}' was never populated on '{primary}' (group '{group}')"
            )
        return self.facts.get(primary, key)


class PlayScope:
    """Variables visible to the hosts of one play."""

    def __init__(
        self,
        resolver: VariableResolver,
        play: PlaySpec,
        overrides: dict[str, Any],
        references: dict[str, dict[str, Any]],
    ):
        self.resolver = resolver
        self.play = play
        self.overrides = overrides
        self.references = references

    def resolve(self, name: str, host: HostConfig) -> Any:
        return self._resolve(name, host, ())

    def render(self, value: Any, host: HostConfig) -> Any:
        return self._render(value, host, ())

    def _resolve(self, name: str, host: HostConfig, seen: tuple[str, ...]) -> Any:
        if name in seen:
            raise UnresolvedVariable(name, "circular reference via " + " -> ".join(seen))
        seen = seen + (name,)
        facts = self.resolver.facts
        if name in self.overrides:
            return self._render(self.overrides[name], host, seen)
        if facts.has(host.name, name):
            return facts.get(host.name, name)
        if name in self.references:
            return self.resolver.lookup_reference(name, self.references[name])
        if name in host.variables:
            return self._render(host.variables[name], host, seen)
        if name in self.resolver.plan.defaults:
            return self._render(self.resolver.plan.defaults[name], host, seen)
        raise UnresolvedVariable(name)

    def _render(self, value: Any, host: HostConfig, seen: tuple[str, ...]) -> Any:
        if isinstance(value, str):
            whole = _WHOLE_PLACEHOLDER.fullmatch(value)
            if whole:
                return self._resolve(whole.group(1), host, seen)
            return VariableTemplate(value).substitute(_Lookup(self, host, seen))
        if is_secret_reference(value):
            return self.resolver.secret_resolver.resolve_value(value)
        if isinstance(value, dict):
            return {k: self._render(v, host, seen) for k, v in value.items()}
        if isinstance(value, list):
            return [self._render(v, host, seen) for v in value]
        return value


class _Lookup(Mapping):
    """Lazy mapping handed to ``Template.substitute``."""

    def __init__(self, scope: PlayScope, host: HostConfig, seen: tuple[str, ...]):
        self.scope = scope
        self.host = host
        self.seen = seen

    def __getitem__(self, key: str) -> Any:
        return self.scope._resolve(key, self.host, self.seen)

    def __iter__(self) -> Iterator[str]:
        return iter(())

    def __len__(self) -> int:
        return 0
