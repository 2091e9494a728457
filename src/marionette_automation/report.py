from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .types import ActionResult

logger = logging.getLogger(__name__)


@dataclass
class HostReport:
    host: str
    results: list[ActionResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        if self.error:
            return True
        return any(r.failed and not r.ignored for r in self.results)

    @property
    def changed(self) -> bool:
        return any(r.changed for r in self.results)

    @property
    def status(self) -> str:
        if self.failed:
            return "failed"
        if self.changed:
            return "changed"
        if self.results and all(r.skipped for r in self.results):
            return "skipped"
        return "unchanged"


@dataclass
class PlayReport:
    name: str
    target: str
    hosts: list[HostReport] = field(default_factory=list)
    best_effort: bool = False
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return bool(self.error) or any(h.failed for h in self.hosts)

    def failed_hosts(self) -> set[str]:
        return {h.host for h in self.hosts if h.failed}


@dataclass
class RunReport:
    plays: list[PlayReport] = field(default_factory=list)
    dry_run: bool = False

    @property
    def results(self) -> list[ActionResult]:
        return [r for play in self.plays for host in play.hosts for r in host.results]

    def matrix(self) -> dict[str, dict[str, str]]:
        return {play.name: {h.host: h.status for h in play.hosts} for play in self.plays}

    @property
    def failed(self) -> bool:
        return any(play.failed and not play.best_effort for play in self.plays)

    @property
    def exit_code(self) -> int:
        return 1 if self.failed else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "failed": self.failed,
            "plays": [
                {
                    "name": play.name,
                    "target": play.target,
                    "best_effort": play.best_effort,
                    "error": play.error,
                    "hosts": {
                        host.host: {
                            "status": host.status,
                            "error": host.error,
                            "results": [_result_dict(r) for r in host.results],
                        }
                        for host in play.hosts
                    },
                }
                for play in self.plays
            ],
        }


def _result_dict(result: ActionResult) -> dict[str, Any]:
    return {
        "id": result.action_id,
        "action": result.action,
        "resource": result.resource,
        "status": result.status,
        "details": result.details,
        "error": result.error,
        "ignored": result.ignored,
    }


def write_report(report: RunReport, path: Path) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(report.to_dict(), indent=2))
    try:
        os.chmod(path, 0o600)
    except OSError:
        logger.debug("Unable to chmod report file %s", path, exc_info=True)
