from __future__ import annotations

import logging
import threading
from typing import Any, Iterable, Mapping

from .types import HostConfig

logger = logging.getLogger(__name__)


class FactStore:
    """Per-host snapshot of observed state for the duration of one run.

    Every host owns an isolated namespace. Values are overwritten in place
    and never expire; ``reset`` is the only way to drop them.
    """

    def __init__(self) -> None:
        self._facts: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def reset(self, hosts: Iterable[HostConfig]) -> None:
        with self._lock:
            self._facts = {}
            for host in hosts:
                self._facts[host.name] = {
                    "inventory_hostname": host.name,
                    "address": host.address or host.name,
                    "groups": list(host.groups),
                }

    def get(self, host: str, key: str, default: Any = None) -> Any:
        return self._namespace(host).get(key, default)

    def has(self, host: str, key: str) -> bool:
        return key in self._namespace(host)

    def set(self, host: str, key: str, value: Any) -> None:
        logger.debug("fact host=%s key=%s", host, key)
        self._namespace(host)[key] = value

    def update(self, host: str, values: Mapping[str, Any]) -> None:
        if not values:
            return
        namespace = self._namespace(host)
        for key, value in values.items():
            logger.debug("fact host=%s key=%s", host, key)
            namespace[key] = value

    def snapshot(self, host: str) -> dict[str, Any]:
        return dict(self._namespace(host))

    def _namespace(self, host: str) -> dict[str, Any]:
        with self._lock:
            return self._facts.setdefault(host, {})
