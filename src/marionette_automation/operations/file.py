from __future__ import annotations

import re
from pathlib import Path
from string import Template
from typing import Any, Mapping, Optional

from .base import Operation, parse_mode
from ..executors import Executor
from ..secrets import SecretResolver
from ..types import HostConfig

# Optional dependency; resolved at render time if Jinja syntax is detected
try:  # pragma: no cover
    import jinja2
except ImportError:  # pragma: no cover
    jinja2 = None


class FileOperation(Operation):
    """Ensure files, directories and links match the requested state."""

    secret_resolver = SecretResolver()

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_path = spec.get("path") or spec.get("dest") or spec.get("name")
        if not raw_path:
            raise ValueError("file operation requires a path")
        self.path = Path(str(raw_path))
        self.link_target = spec.get("link_target") or spec.get("src")
        default_state = "link" if self.link_target else "present"
        self.state = str(spec.get("state", default_state))
        if self.state not in {"present", "absent", "directory", "link"}:
            raise ValueError("file operation state must be 'present', 'absent', 'directory' or 'link'")
        if self.state == "link" and not self.link_target:
            raise ValueError("file operation with state 'link' requires link_target")
        raw_content = spec.get("content")
        self.content = "" if raw_content is None else str(raw_content)
        self.mode = parse_mode(spec.get("mode"))
        self.template = spec.get("template")
        self.variables = spec.get("variables", {})
        self.plan_dir = spec.get("_plan_dir")
        self.template_dir = spec.get("_template_dir")
        if self.template is not None:
            self.template = str(self.template)
        if not isinstance(self.variables, dict):
            raise ValueError("file operation variables must be a mapping")
        if self.link_target is not None:
            self.link_target = str(self.link_target)
        self._desired: Optional[str] = None

    def probe(self, host: HostConfig, executor: Executor) -> dict[str, Any]:
        prefix = f"file.{self.path}"
        kind = executor.path_kind(self.path)
        facts: dict[str, Any] = {f"{prefix}.kind": kind}
        if kind == "link":
            facts[f"{prefix}.link"] = executor.read_link(self.path)
        if kind == "file" and self.state == "present":
            facts[f"{prefix}.content"] = executor.read_file(self.path)
        if kind in {"file", "directory"}:
            facts[f"{prefix}.mode"] = executor.file_mode(self.path)
        if self.state == "present":
            self._desired = self._render_content(host)
        return facts

    def is_satisfied(self, facts: Mapping[str, Any]) -> bool:
        prefix = f"file.{self.path}"
        kind = facts.get(f"{prefix}.kind")
        if self.state == "absent":
            return kind == "absent"
        if self.state == "link":
            return kind == "link" and facts.get(f"{prefix}.link") == self.link_target
        expected_kind = "directory" if self.state == "directory" else "file"
        if kind != expected_kind:
            return False
        if self.mode is not None and facts.get(f"{prefix}.mode") != self.mode:
            return False
        if self.state == "present":
            return facts.get(f"{prefix}.content") == self._desired
        return True

    def apply(self, host: HostConfig, executor: Executor) -> str:
        if self.state == "link":
            return self._apply_symlink(executor)
        if self.state == "directory":
            _, detail = executor.ensure_directory(self.path, mode=self.mode)
        elif self.state == "absent":
            removed = executor.remove_path(self.path)
            detail = "removed" if removed else "noop"
        else:
            content = self._render_content(host)
            _, detail = executor.write_file(self.path, content=content, mode=self.mode)
            self.published[f"file.{self.path}.content"] = content
        return detail

    def _apply_symlink(self, executor: Executor) -> str:
        assert self.link_target is not None
        if executor.read_link(self.path) == self.link_target:
            return "noop"
        executor.make_link(self.link_target, self.path)
        return f"link->{self.link_target}"

    def _render_content(self, host: HostConfig) -> str:
        if self._desired is not None:
            return self._desired
        if not self.template:
            return self.content
        template_text = self._template_path().read_text()
        context: dict[str, object] = dict(host.variables)
        context.update(self.variables)
        context = self.secret_resolver.resolve(context)
        if self._looks_like_jinja(template_text):
            if jinja2 is None:
                raise RuntimeError("Jinja2 is required to render this template (pip install Jinja2)")
            env = jinja2.Environment(undefined=jinja2.StrictUndefined, autoescape=False)
            return env.from_string(template_text).render(**context)
        return Template(template_text).safe_substitute(context)

    def _template_path(self) -> Path:
        assert self.template is not None
        template_path = Path(self.template).expanduser()
        if template_path.is_absolute():
            return template_path
        for base in (self.template_dir, self.plan_dir):
            if base is None:
                continue
            candidate = Path(str(base)) / template_path
            if candidate.exists():
                return candidate
        return template_path

    @staticmethod
    def _looks_like_jinja(template_text: str) -> bool:
        return bool(re.search(r"{[{%]", template_text))
