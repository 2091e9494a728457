from __future__ import annotations

import dataclasses
import logging

from .converge import HostConverger
from .executors import Executor
from .types import ActionResult, HostConfig, PlaySpec
from .variables import PlayScope

logger = logging.getLogger(__name__)


class HandlerDispatcher:
    """Fire notified handlers once per host at the end of a play.

    Handlers run in the order the play declares them, regardless of the
    order in which they were notified. A handler may notify one declared
    after it.
    """

    def __init__(self, converger: HostConverger):
        self.converger = converger

    def flush(
        self,
        host: HostConfig,
        executor: Executor,
        play: PlaySpec,
        scope: PlayScope,
        pending: set[str],
    ) -> list[ActionResult]:
        results: list[ActionResult] = []
        fired: set[str] = set()
        for handler in play.handlers:
            if handler.name not in pending or handler.name in fired:
                continue
            fired.add(handler.name)
            logger.info("handler=%s host=%s play=%s firing", handler.name, host.name, play.name)
            # A notified handler always applies, even when its state already holds.
            action = dataclasses.replace(handler.action, always_run=True)
            result = self.converger.converge(host, executor, play, scope, action, pending)
            if result.failed and result.error in (None, "ApplyFailure"):
                result.error = "HandlerFailure"
            results.append(result)
        unknown = pending - fired - {h.name for h in play.handlers}
        if unknown:
            logger.warning("host=%s notified unknown handlers: %s", host.name, ", ".join(sorted(unknown)))
        pending.clear()
        return results
