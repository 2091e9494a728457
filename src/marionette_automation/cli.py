from __future__ import annotations

import argparse
import importlib
import importlib.util
import logging
import os
import sys
import threading
from pathlib import Path
from typing import Any, Optional, Sequence

from .config import DEFAULT_CONFIG, MarionetteConfig, load_config
from .converge import resource_name
from .errors import PlanError
from .inventory import InventoryLoader
from .operations import OPERATION_REGISTRY
from .report import RunReport, write_report
from .runner import PlayRunner
from .types import ActionResult, ActionSpec, HostConfig

logger = logging.getLogger(__name__)


class Ansi:
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    ORANGE = "\033[38;5;208m"
    RESET = "\033[0m"


STATUS_COLORS = {
    "failed": Ansi.RED,
    "changed": Ansi.GREEN,
    "unchanged": Ansi.BLUE,
    "skipped": Ansi.BLUE,
}


def colorize(text: str, color: Optional[str]) -> str:
    if not color:
        return text
    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        return text
    return f"{color}{text}{Ansi.RESET}"


_last_progress_len = 0
# Progress is reported from the converge worker threads.
_progress_lock = threading.Lock()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Marionette convergence runner")
    parser.add_argument(
        "plan",
        nargs="?",
        default=None,
        type=Path,
        help="Path to a plan file (default from config or /etc/marionette/plan.mar)",
    )
    parser.add_argument(
        "--inventory",
        type=Path,
        help="TOML file whose hosts and groups override the plan's",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG,
        help=f"Path to marionette config file (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument("--dry-run", action="store_true", help="Report what would change without applying")
    parser.add_argument("--forks", type=int, help="Hosts converged in parallel per play (default: 5)")
    parser.add_argument("--timeout", type=float, help="Per-command timeout in seconds")
    parser.add_argument("--report-file", type=Path, help="Write a JSON run report to this path")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s %(name)s - %(message)s",
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    cfg = load_config(args.config)
    _apply_aws_env(cfg)
    try:
        _load_plugins(cfg)
    except (ImportError, OSError) as exc:
        print(colorize(f"Plugin loading failed: {exc}", Ansi.RED), file=sys.stderr)
        return 1

    plan_path = args.plan or cfg.plan
    loader = InventoryLoader(template_dir=cfg.template_dir)
    try:
        plan = loader.load(plan_path, inventory=args.inventory or cfg.inventory)
    except (PlanError, OSError) as exc:
        _clear_progress()
        print(colorize(f"Plan validation failed: {exc}", Ansi.RED), file=sys.stderr)
        return 1

    runner = PlayRunner(
        plan,
        dry_run=args.dry_run,
        forks=args.forks or cfg.forks,
        command_timeout=args.timeout or cfg.command_timeout,
        registry=OPERATION_REGISTRY,
        progress_callback=print_progress,
    )
    try:
        report = runner.run()
    except Exception as exc:  # noqa: BLE001
        _clear_progress()
        if logging.getLogger().isEnabledFor(logging.DEBUG):
            raise
        print(colorize(f"Execution failed: {exc}", Ansi.RED), file=sys.stderr)
        return 1

    effective_level = logging.getLogger().getEffectiveLevel()
    summary = Summary()
    for result in report.results:
        _clear_progress()
        summary.add(result)
        if not should_display_result(result, effective_level):
            continue
        print(format_result(result))

    _clear_progress()
    for line in render_matrix(report):
        print(line)
    print(summary.render())

    report_file = args.report_file or cfg.report_file
    if report_file:
        write_report(report, report_file)
        logger.info("report written to %s", report_file)

    return report.exit_code


def format_result(result: ActionResult) -> str:
    status = result.status
    color = STATUS_COLORS.get(status)
    if result.failed:
        if "unknown operation" in result.details.lower():
            status = "unknown"
            color = Ansi.ORANGE
        elif result.ignored:
            status = "failed (ignored)"
            color = Ansi.ORANGE
    resource = f"[{result.resource}]" if result.resource else ""
    line = f"{result.host}::{result.action}{resource} {status} - {result.details}"
    return colorize(line, color)


def should_display_result(result: ActionResult, log_level: int) -> bool:
    if result.failed or result.changed:
        return True
    return log_level <= logging.DEBUG


def render_matrix(report: RunReport) -> list[str]:
    lines: list[str] = []
    for play in report.plays:
        header = f"PLAY {play.name} [{play.target}]"
        if play.error:
            header = f"{header} - {play.error}"
        lines.append(colorize(header, Ansi.RED if play.failed else None))
        for host in play.hosts:
            lines.append("  " + colorize(f"{host.host}: {host.status}", STATUS_COLORS.get(host.status)))
    return lines


def print_progress(host: HostConfig, action: ActionSpec) -> None:
    global _last_progress_len
    resource = resource_name(action.data)
    suffix = f"[{resource}]" if resource else ""
    line = f"{host.name}::{action.type}{suffix} pending..."
    with _progress_lock:
        padded = line.ljust(_last_progress_len)
        _last_progress_len = len(line)
        print(colorize(padded, Ansi.YELLOW), end="\r", flush=True)


def _clear_progress() -> None:
    global _last_progress_len
    with _progress_lock:
        if _last_progress_len:
            print(" " * _last_progress_len, end="\r", flush=True)
            _last_progress_len = 0


def _load_plugins(cfg: MarionetteConfig) -> None:
    """Import plugin modules and let them add operations to the registry."""

    for plugin_dir in cfg.plugin_dirs:
        plugin_dir = Path(plugin_dir)
        if not plugin_dir.is_dir():
            logger.warning("plugin directory %s does not exist", plugin_dir)
            continue
        for path in sorted(plugin_dir.glob("*.py")):
            if path.name.startswith("_"):
                continue
            spec = importlib.util.spec_from_file_location(f"marionette_plugin_{path.stem}", path)
            if spec is None or spec.loader is None:
                raise ImportError(f"cannot load plugin {path}")
            module = importlib.util.module_from_spec(spec)
            spec.loader.exec_module(module)
            _register(module, str(path))
    for name in cfg.plugin_modules:
        _register(importlib.import_module(name), name)


def _register(module: Any, origin: str) -> None:
    hook = getattr(module, "register_operations", None)
    if hook is None:
        logger.warning("plugin %s has no register_operations()", origin)
        return
    before = set(OPERATION_REGISTRY)
    hook(OPERATION_REGISTRY)
    added = sorted(set(OPERATION_REGISTRY) - before)
    logger.debug("plugin=%s operations=%s", origin, ",".join(added))


def _apply_aws_env(cfg: MarionetteConfig) -> None:
    if cfg.aws_profile and "AWS_PROFILE" not in os.environ:
        os.environ["AWS_PROFILE"] = cfg.aws_profile
    if cfg.aws_region:
        os.environ.setdefault("AWS_REGION", cfg.aws_region)
        os.environ.setdefault("AWS_DEFAULT_REGION", cfg.aws_region)


class Summary:
    def __init__(self) -> None:
        self.changed = 0
        self.unchanged = 0
        self.skipped = 0
        self.failed = 0

    def add(self, result: ActionResult) -> None:
        setattr(self, result.status, getattr(self, result.status) + 1)

    def render(self) -> str:
        parts = [
            f"Changed: {self.changed}",
            f"Unchanged: {self.unchanged}",
            f"Skipped: {self.skipped}",
            f"Failed: {self.failed}",
        ]
        text = " | ".join(parts)
        color = Ansi.GREEN if self.failed == 0 else Ansi.RED
        return colorize(text, color)


if __name__ == "__main__":
    raise SystemExit(main())
