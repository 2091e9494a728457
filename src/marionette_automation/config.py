from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

DEFAULT_CONFIG = Path("/etc/marionette/main.conf")
DEFAULT_PLAN = Path("/etc/marionette/plan.mar")
DEFAULT_FORKS = 5


@dataclass
class MarionetteConfig:
    plan: Path = DEFAULT_PLAN
    inventory: Optional[Path] = None
    report_file: Optional[Path] = None
    forks: int = DEFAULT_FORKS
    command_timeout: Optional[float] = None
    template_dir: Optional[Path] = None
    plugin_dirs: list[Path] = field(default_factory=list)
    plugin_modules: list[str] = field(default_factory=list)
    aws_region: Optional[str] = None
    aws_profile: Optional[str] = None


def load_config(path: Path) -> MarionetteConfig:
    if not path.exists():
        return MarionetteConfig()
    data = tomllib.loads(path.read_text())
    defaults = data.get("defaults", {})
    inventory = defaults.get("inventory")
    report_file = defaults.get("report_file")
    command_timeout = defaults.get("command_timeout")
    template_dir = defaults.get("template_dir")
    aws_region = defaults.get("aws_region")
    aws_profile = defaults.get("aws_profile")
    return MarionetteConfig(
        plan=Path(defaults.get("plan", DEFAULT_PLAN)),
        inventory=Path(inventory) if inventory else None,
        report_file=Path(report_file) if report_file else None,
        forks=int(defaults.get("forks", DEFAULT_FORKS)),
        command_timeout=float(command_timeout) if command_timeout else None,
        template_dir=Path(template_dir) if template_dir else None,
        plugin_dirs=[Path(p) for p in _as_list(defaults.get("plugin_dirs"))],
        plugin_modules=[str(m) for m in _as_list(defaults.get("plugin_modules"))],
        aws_region=str(aws_region) if aws_region else None,
        aws_profile=str(aws_profile) if aws_profile else None,
    )


def _as_list(value: Any) -> list[Any]:
    if not value:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]
