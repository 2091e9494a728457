from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from .converge import HostConverger, ProgressCallback
from .errors import UnresolvedVariable
from .executors import ChannelExecutor, Executor, LocalExecutor, RemoteChannel, SshChannel
from .facts import FactStore
from .handlers import HandlerDispatcher
from .operations import Operation
from .report import HostReport, PlayReport, RunReport
from .secrets import SecretResolver
from .types import ActionResult, HostConfig, Plan, PlaySpec
from .variables import PlayScope, VariableResolver

logger = logging.getLogger(__name__)


class PlayRunner:
    """Runs a plan's plays in order, converging each play's hosts in parallel."""

    def __init__(
        self,
        plan: Plan,
        *,
        dry_run: bool = False,
        forks: int = 5,
        command_timeout: Optional[float] = None,
        channel: Optional[RemoteChannel] = None,
        executor_factory: Optional[Callable[[HostConfig], Executor]] = None,
        secret_resolver: Optional[SecretResolver] = None,
        registry: Optional[dict[str, type[Operation]]] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.plan = plan
        self.dry_run = dry_run
        self.forks = max(1, int(forks))
        self.command_timeout = command_timeout
        self.channel = channel
        self.executor_factory = executor_factory or self._executor_for
        self.facts = FactStore()
        self.resolver = VariableResolver(plan, self.facts, secret_resolver=secret_resolver)
        self.converger = HostConverger(
            self.facts,
            registry=registry,
            dry_run=dry_run,
            progress_callback=progress_callback,
        )
        self.handlers = HandlerDispatcher(self.converger)

    def run(self) -> RunReport:
        self.facts.reset(self.plan.hosts.values())
        self.resolver.failed_hosts.clear()
        report = RunReport(dry_run=self.dry_run)
        for play in self.plan.plays:
            play_report = self._run_play(play)
            failed = play_report.failed_hosts()
            if failed:
                self.resolver.mark_failed(failed)
            logger.info(
                "play=%s target=%s hosts=%d failed=%d",
                play.name,
                play.hosts,
                len(play_report.hosts),
                len(failed),
            )
            report.plays.append(play_report)
        return report

    def _run_play(self, play: PlaySpec) -> PlayReport:
        report = PlayReport(name=play.name, target=play.hosts, best_effort=play.best_effort)
        members = self.plan.members(play.hosts)
        if not members:
            logger.warning("play=%s target=%s matches no hosts", play.name, play.hosts)
            return report

        try:
            scope = self.resolver.scope(play)
        except UnresolvedVariable as exc:
            logger.error("play=%s cannot run: %s", play.name, exc)
            report.error = str(exc)
            report.hosts = [self._play_failure(name, play, exc) for name in members]
            return report

        logger.debug("play=%s hosts=%s", play.name, ",".join(members))
        workers = min(self.forks, len(members))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="converge") as pool:
            futures = {
                name: pool.submit(self._converge_host, self.plan.hosts[name], play, scope)
                for name in members
            }
            report.hosts = [futures[name].result() for name in members]
        return report

    def _converge_host(self, host: HostConfig, play: PlaySpec, scope: PlayScope) -> HostReport:
        try:
            executor = self.executor_factory(host)
        except Exception as exc:  # noqa: BLE001
            logger.error("host=%s no executor: %s", host.name, exc)
            return HostReport(host=host.name, error=str(exc) or type(exc).__name__)
        pending: set[str] = set()
        results: list[ActionResult] = []
        try:
            results.extend(self.converger.run(host, executor, play, scope, pending))
            if pending:
                results.extend(self.handlers.flush(host, executor, play, scope, pending))
        except Exception as exc:  # noqa: BLE001
            # Confined to this host; siblings keep their results.
            logger.error("host=%s play=%s aborted: %s", host.name, play.name, exc, exc_info=True)
            return HostReport(host=host.name, results=results, error=str(exc) or type(exc).__name__)
        return HostReport(host=host.name, results=results)

    @staticmethod
    def _play_failure(name: str, play: PlaySpec, exc: UnresolvedVariable) -> HostReport:
        result = ActionResult(
            host=name,
            action="play",
            changed=False,
            details=str(exc),
            failed=True,
            resource=play.name,
            error="UnresolvedVariable",
            play=play.name,
        )
        return HostReport(host=name, results=[result], error=str(exc))

    def _executor_for(self, host: HostConfig) -> Executor:
        options = dict(dry_run=self.dry_run, timeout=self.command_timeout)
        if host.connection == "local":
            return LocalExecutor(host, **options)
        if host.connection == "ssh":
            return ChannelExecutor(host, self.channel or SshChannel(), **options)
        if host.connection == "channel":
            if self.channel is None:
                raise ValueError(f"Host '{host.name}' uses connection 'channel' but no channel was supplied")
            return ChannelExecutor(host, self.channel, **options)
        raise ValueError(f"Unknown connection type '{host.connection}'")
