from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from .base import Operation, coerce_bool
from ..errors import ProbeFailure
from ..executors import Executor
from ..types import HostConfig

logger = logging.getLogger(__name__)


def version_matches(installed: Optional[str], wanted: Optional[str]) -> bool:
    """``7.0.6`` matches ``7.0.6`` and ``7.0.6-1nodesource1`` but not ``7.0.60``."""

    if installed is None:
        return False
    if wanted is None or installed == wanted:
        return True
    return installed.startswith(wanted) and installed[len(wanted)] in "-+~"


class PackageOperation(Operation):
    """Install or remove packages using the detected package manager."""

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        packages = spec.get("name") or spec.get("packages")
        if isinstance(packages, str):
            packages = [packages]
        self.wanted: dict[str, Optional[str]] = {}
        for entry in packages or []:
            name, sep, version = str(entry).partition("=")
            self.wanted[name.strip()] = version.strip() if sep else None
        if not self.wanted:
            raise ValueError("package operation requires at least one package")
        self.state = str(spec.get("state", "present"))
        if self.state not in {"present", "absent"}:
            raise ValueError("package operation state must be 'present' or 'absent'")
        self.preferred_manager = spec.get("manager")
        self.update_cache = coerce_bool(spec.get("update_cache", False))
        self.manager: Optional[PackageManager] = None

    def probe(self, host: HostConfig, executor: Executor) -> dict[str, Any]:
        manager = self._manager(executor)
        logger.debug("package-manager=%s host=%s packages=%s", manager.name, host.name, list(self.wanted))
        return {self.fact_key(name): manager.installed_version(executor, name) for name in self.wanted}

    def is_satisfied(self, facts: Mapping[str, Any]) -> bool:
        for name, version in self.wanted.items():
            installed = facts.get(self.fact_key(name))
            if self.state == "absent":
                if installed is not None:
                    return False
            elif not version_matches(installed, version):
                return False
        return True

    def apply(self, host: HostConfig, executor: Executor) -> str:
        manager = self._manager(executor)
        if self.state == "present":
            changed, details = manager.ensure_present(executor, self.wanted, refresh=self.update_cache)
        else:
            changed, details = manager.ensure_absent(executor, self.wanted)
        for name in self.wanted:
            self.published[self.fact_key(name)] = manager.installed_version(executor, name)
        return f"manager={manager.name} {details}"

    @staticmethod
    def fact_key(name: str) -> str:
        return f"package.{name}.version"

    def _manager(self, executor: Executor) -> "PackageManager":
        if self.manager is None:
            self.manager = PackageManagerFactory.create(self.preferred_manager, executor)
        return self.manager


class PackageManagerFactory:
    _MANAGERS = [
        ("apt-get", "apt", lambda: AptPackageManager()),
        ("dnf", "dnf", lambda: DnfPackageManager()),
        ("yum", "yum", lambda: YumPackageManager()),
    ]
    _EXPLICIT = {"npm": lambda: NpmPackageManager()}

    @classmethod
    def create(cls, preferred: Optional[object], executor: Executor) -> "PackageManager":
        if isinstance(preferred, str):
            preferred = preferred.lower()
            if preferred in cls._EXPLICIT:
                return cls._EXPLICIT[preferred]()
            for _, key, factory in cls._MANAGERS:
                if key == preferred:
                    return factory()
            raise ValueError(f"Unknown package manager '{preferred}'")
        for binary, _, factory in cls._MANAGERS:
            if executor.which(binary):
                return factory()
        raise ProbeFailure(f"No supported package manager found on {executor.host.name}")


class PackageManager:
    name = "generic"

    def ensure_present(
        self,
        executor: Executor,
        wanted: Mapping[str, Optional[str]],
        *,
        refresh: bool = False,
    ) -> tuple[bool, str]:
        needed = [
            name
            for name, version in wanted.items()
            if not version_matches(self.installed_version(executor, name), version)
        ]
        if not needed:
            return False, "already-installed"
        if refresh:
            self.refresh(executor)
        self.install(executor, [self.pin(name, wanted[name]) for name in needed])
        return True, f"installed={','.join(self.pin(name, wanted[name]) for name in needed)}"

    def ensure_absent(self, executor: Executor, wanted: Iterable[str]) -> tuple[bool, str]:
        removable = [name for name in wanted if self.installed_version(executor, name) is not None]
        if not removable:
            return False, "already-removed"
        self.remove(executor, removable)
        return True, f"removed={','.join(removable)}"

    def pin(self, name: str, version: Optional[str]) -> str:
        return name if version is None else f"{name}={version}"

    def refresh(self, executor: Executor) -> None:
        return None

    def install(self, executor: Executor, packages: list[str]) -> None:
        raise NotImplementedError

    def remove(self, executor: Executor, packages: list[str]) -> None:
        raise NotImplementedError

    def installed_version(self, executor: Executor, package: str) -> Optional[str]:
        raise NotImplementedError


@dataclass
class DpkgQuery:
    executable: str = "dpkg-query"

    def version(self, executor: Executor, package: str) -> Optional[str]:
        result = executor.run(
            [self.executable, "-W", "-f", "${Status} ${Version}", package],
            check=False,
            mutable=False,
        )
        if result.returncode == 1:
            return None
        if result.returncode != 0:
            raise ProbeFailure(f"{self.executable} rc={result.returncode}: {result.stderr.strip()}")
        parts = result.stdout.split()
        # "install ok installed 7.0.6"; anything else is a leftover config.
        if len(parts) >= 4 and parts[2] == "installed":
            return parts[3]
        return None


class AptPackageManager(PackageManager):
    name = "apt"
    env = {"DEBIAN_FRONTEND": "noninteractive"}

    def __init__(self) -> None:
        self.query = DpkgQuery()

    def refresh(self, executor: Executor) -> None:
        executor.run(["apt-get", "update"], env=self.env)

    def install(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["apt-get", "install", "-y", *packages], env=self.env)

    def remove(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["apt-get", "remove", "-y", *packages], env=self.env)

    def installed_version(self, executor: Executor, package: str) -> Optional[str]:
        return self.query.version(executor, package)


class DnfPackageManager(PackageManager):
    name = "dnf"

    def pin(self, name: str, version: Optional[str]) -> str:
        return name if version is None else f"{name}-{version}"

    def refresh(self, executor: Executor) -> None:
        executor.run([self.name, "makecache"])

    def install(self, executor: Executor, packages: list[str]) -> None:
        executor.run([self.name, "install", "-y", *packages])

    def remove(self, executor: Executor, packages: list[str]) -> None:
        executor.run([self.name, "remove", "-y", *packages])

    def installed_version(self, executor: Executor, package: str) -> Optional[str]:
        result = executor.run(
            ["rpm", "-q", "--qf", "%{VERSION}-%{RELEASE}", package],
            check=False,
            mutable=False,
        )
        if result.returncode == 1:
            return None
        if result.returncode != 0:
            raise ProbeFailure(f"rpm rc={result.returncode}: {result.stderr.strip()}")
        return result.stdout.strip() or None


class YumPackageManager(DnfPackageManager):
    name = "yum"


class NpmPackageManager(PackageManager):
    """Globally installed node packages (``npm install -g``)."""

    name = "npm"

    def pin(self, name: str, version: Optional[str]) -> str:
        return name if version is None else f"{name}@{version}"

    def install(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["npm", "install", "-g", *packages])

    def remove(self, executor: Executor, packages: list[str]) -> None:
        executor.run(["npm", "uninstall", "-g", *packages])

    def installed_version(self, executor: Executor, package: str) -> Optional[str]:
        result = executor.run(
            ["npm", "ls", "-g", "--depth=0", "--json", package],
            check=False,
            mutable=False,
        )
        if result.returncode not in (0, 1):
            raise ProbeFailure(f"npm rc={result.returncode}: {result.stderr.strip()}")
        try:
            payload = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise ProbeFailure(f"npm ls returned invalid JSON: {exc}") from exc
        entry = (payload.get("dependencies") or {}).get(package)
        if not entry:
            return None
        return entry.get("version")
