from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .base import Operation, coerce_bool, parse_mode
from ..executors import Executor
from ..types import HostConfig


class RepositoryOperation(Operation):
    """Register an apt source list or a yum/dnf repo stanza.

    apt repositories may carry a signing key: ``key_url`` is fetched and
    de-armored into ``keyring`` once, before the source list is written.
    """

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_name = spec.get("name") or spec.get("filename") or spec.get("id")
        if not raw_name:
            raise ValueError("repository requires a name")
        self.name = str(raw_name)
        self.format = str(spec.get("format", "apt"))
        if self.format not in {"apt", "yum"}:
            raise ValueError("repository format must be 'apt' or 'yum'")
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("repository state must be 'present' or 'absent'")

        self.repo = spec.get("repo")
        self.key_url = spec.get("key_url")
        keyring = spec.get("keyring")
        self.keyring: Optional[Path] = Path(str(keyring)) if keyring else None
        if self.key_url and self.keyring is None:
            self.keyring = Path(f"/usr/share/keyrings/{self.name}.gpg")
        self.update_cache = coerce_bool(spec.get("update_cache", self.format == "apt"))

        self.baseurl = spec.get("baseurl")
        self.mirrorlist = spec.get("mirrorlist")
        self.enabled = coerce_bool(spec.get("enabled", True))
        self.gpgcheck = coerce_bool(spec.get("gpgcheck", True))
        self.gpgkey = spec.get("gpgkey")
        self.description = spec.get("description", self.name)
        self.options: Dict[str, Any] = spec.get("options", {}) or {}
        if not isinstance(self.options, dict):
            raise ValueError("repository options must be a mapping")

        if self.state == "present":
            if self.format == "apt" and not self.repo:
                raise ValueError("apt repository requires a 'repo' line when state=present")
            if self.format == "yum" and not (self.baseurl or self.mirrorlist):
                raise ValueError("yum repository requires baseurl or mirrorlist when state=present")

        default_path = (
            f"/etc/apt/sources.list.d/{self.name}.list"
            if self.format == "apt"
            else f"/etc/yum.repos.d/{self.name}.repo"
        )
        self.path = Path(spec.get("path") or default_path)
        self.mode = parse_mode(spec.get("mode"), 0o644)

    def probe(self, host: HostConfig, executor: Executor) -> dict[str, Any]:
        facts: dict[str, Any] = {f"repository.{self.name}.content": executor.read_file(self.path)}
        if self.keyring is not None:
            facts[f"repository.{self.name}.keyring"] = executor.path_kind(self.keyring) != "absent"
        return facts

    def is_satisfied(self, facts: Mapping[str, Any]) -> bool:
        content = facts.get(f"repository.{self.name}.content")
        if self.state == "absent":
            return content is None
        if content != self.render():
            return False
        if self.keyring is not None and self.key_url:
            return facts.get(f"repository.{self.name}.keyring") is True
        return True

    def apply(self, host: HostConfig, executor: Executor) -> str:
        if self.state == "absent":
            removed = executor.remove_path(self.path)
            self.published[f"repository.{self.name}.content"] = None
            return "removed" if removed else "noop"

        changes: list[str] = []
        if self.key_url and self.keyring is not None and executor.path_kind(self.keyring) == "absent":
            executor.run(
                [
                    "sh",
                    "-c",
                    'curl -fsSL "$0" | gpg --dearmor --yes -o "$1"',
                    str(self.key_url),
                    str(self.keyring),
                ]
            )
            changes.append(f"key->{self.keyring}")
        content = self.render()
        changed, detail = executor.write_file(self.path, content=content, mode=self.mode)
        if changed:
            changes.append(detail)
            if self.format == "apt" and self.update_cache:
                executor.run(["apt-get", "update"])
                changes.append("cache-updated")
        self.published[f"repository.{self.name}.content"] = content
        if self.keyring is not None:
            self.published[f"repository.{self.name}.keyring"] = True
        return ", ".join(changes) if changes else "noop"

    def render(self) -> str:
        if self.format == "apt":
            return f"{self.repo}\n"
        lines = [f"[{self.name}]"]
        lines.append(f"name={self.description}")
        if self.baseurl:
            lines.append(f"baseurl={self.baseurl}")
        if self.mirrorlist:
            lines.append(f"mirrorlist={self.mirrorlist}")
        lines.append(f"enabled={_bool_to_int(self.enabled)}")
        lines.append(f"gpgcheck={_bool_to_int(self.gpgcheck)}")
        if self.gpgkey:
            lines.append(f"gpgkey={self.gpgkey}")
        for key, value in sorted(self.options.items()):
            lines.append(f"{key}={value}")
        return "\n".join(lines) + "\n"


def _bool_to_int(value: bool) -> int:
    return 1 if value else 0
