from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Mapping, Optional

from .base import Operation, coerce_bool
from ..errors import ProbeFailure
from ..executors import Executor
from ..types import HostConfig

_SHA = re.compile(r"^[0-9a-f]{40}$")


class GitOperation(Operation):
    """Keep a git checkout at the revision its remote currently advertises."""

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        repo = spec.get("repo")
        if not repo:
            raise ValueError("git operation requires a repo")
        self.repo = str(repo)
        dest = spec.get("dest") or spec.get("name")
        if not dest:
            raise ValueError("git operation requires a dest")
        self.dest = Path(str(dest))
        self.version = str(spec.get("version", "HEAD"))
        self.force = coerce_bool(spec.get("force", False))

    def probe(self, host: HostConfig, executor: Executor) -> dict[str, Any]:
        return {
            f"git.{self.dest}.revision": self._local_revision(executor),
            f"git.{self.dest}.remote_revision": self._remote_revision(executor),
        }

    def is_satisfied(self, facts: Mapping[str, Any]) -> bool:
        revision = facts.get(f"git.{self.dest}.revision")
        return revision is not None and revision == facts.get(f"git.{self.dest}.remote_revision")

    def apply(self, host: HostConfig, executor: Executor) -> str:
        before = self._local_revision(executor)
        if before is None:
            command = ["git", "clone", self.repo, str(self.dest)]
            if self.version != "HEAD" and not _SHA.match(self.version):
                command[2:2] = ["--branch", self.version]
            executor.run(command)
            if _SHA.match(self.version):
                executor.run(["git", "-C", str(self.dest), "checkout", self.version])
            detail = "cloned"
        else:
            executor.run(["git", "-C", str(self.dest), "fetch", "--prune", "origin", self.version])
            if self.force:
                executor.run(["git", "-C", str(self.dest), "reset", "--hard", "FETCH_HEAD"])
            else:
                executor.run(["git", "-C", str(self.dest), "merge", "--ff-only", "FETCH_HEAD"])
            detail = "updated"
        after = self._local_revision(executor)
        self.published[f"git.{self.dest}.revision"] = after
        return f"{detail} {before or 'none'}->{after}"

    def _local_revision(self, executor: Executor) -> Optional[str]:
        if executor.path_kind(self.dest / ".git") == "absent":
            return None
        result = executor.run(["git", "-C", str(self.dest), "rev-parse", "HEAD"], check=False, mutable=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def _remote_revision(self, executor: Executor) -> str:
        if _SHA.match(self.version):
            return self.version
        result = executor.run(["git", "ls-remote", self.repo, self.version], check=False, mutable=False)
        if result.returncode != 0:
            raise ProbeFailure(f"git ls-remote failed: {result.stderr.strip() or result.stdout.strip()}")
        advertised: dict[str, str] = {}
        for line in result.stdout.splitlines():
            revision, _, ref = line.partition("\t")
            advertised[ref.strip()] = revision.strip()
        wanted = (f"refs/heads/{self.version}", f"refs/tags/{self.version}", self.version)
        # Annotated tags advertise the tag object; the peeled entry is the commit.
        for ref in wanted:
            if f"{ref}^{{}}" in advertised:
                return advertised[f"{ref}^{{}}"]
        for ref in wanted:
            if ref in advertised:
                return advertised[ref]
        raise ProbeFailure(f"{self.repo} does not advertise {self.version}")
