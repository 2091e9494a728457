"""Per-host convergence of one play's ordered actions."""

from __future__ import annotations

import logging
import subprocess
from typing import Any, Callable, Optional

from .conditions import Condition, all_hold
from .errors import ConvergenceError
from .executors import Executor
from .facts import FactStore
from .operations import OPERATION_REGISTRY, Operation
from .types import ActionResult, ActionSpec, HostConfig, PlaySpec
from .variables import PlayScope

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[HostConfig, ActionSpec], None]


def resource_name(data: dict[str, Any]) -> Optional[str]:
    for key in ("resource", "name", "path", "dest", "service"):
        value = data.get(key)
        if value and isinstance(value, (str, int, float)):
            return str(value)
    pkgs = data.get("packages")
    if isinstance(pkgs, (list, tuple)) and pkgs:
        rendered = ", ".join(str(p) for p in pkgs[:3])
        if len(pkgs) > 3:
            rendered += ", ..."
        return rendered
    return None


def error_kind(exc: BaseException, default: str = "ApplyFailure") -> str:
    if isinstance(exc, ConvergenceError):
        return type(exc).__name__
    return default


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, subprocess.CalledProcessError):
        stderr = (exc.stderr or exc.stdout or "").strip()
        first = stderr.splitlines()[0] if stderr else ""
        detail = f"rc={exc.returncode} cmd={' '.join(str(c) for c in exc.cmd)}"
        return f"{detail}: {first}" if first else detail
    return str(exc) or type(exc).__name__


class HostConverger:
    """Runs a play's actions against one host, in declared order.

    Each action is probed afresh, so an action always sees the facts left
    behind by the actions before it.
    """

    def __init__(
        self,
        facts: FactStore,
        *,
        registry: Optional[dict[str, type[Operation]]] = None,
        dry_run: bool = False,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.facts = facts
        self.registry = registry if registry is not None else OPERATION_REGISTRY
        self.dry_run = dry_run
        self.progress_callback = progress_callback

    def run(
        self,
        host: HostConfig,
        executor: Executor,
        play: PlaySpec,
        scope: PlayScope,
        notified: set[str],
    ) -> list[ActionResult]:
        results: list[ActionResult] = []
        host_failed = False
        for action in play.actions:
            if host_failed and play.failure_policy == "abort":
                results.append(
                    self._result(host, action, play, skipped=True, details="skipped (host failed)")
                )
                continue
            result = self.converge(host, executor, play, scope, action, notified)
            logger.debug(
                "action=%s host=%s status=%s", action.id or action.type, host.name, result.status
            )
            results.append(result)
            if result.failed and not result.ignored:
                host_failed = True
        return results

    def converge(
        self,
        host: HostConfig,
        executor: Executor,
        play: PlaySpec,
        scope: PlayScope,
        action: ActionSpec,
        notified: set[str],
    ) -> ActionResult:
        if self.progress_callback:
            self.progress_callback(host, action)

        operation: Optional[Operation] = None
        try:
            if action.when is not None:
                conditions = Condition.parse(scope.render(action.when, host))
                snapshot = self.facts.snapshot(host.name)
                if not all_hold(conditions, snapshot, lambda name: scope.resolve(name, host)):
                    described = "; ".join(c.describe() for c in conditions)
                    result = self._result(
                        host, action, play, skipped=True, details=f"skipped (when: {described})"
                    )
                    return self._register(host, action, result, operation)
            data = scope.render(action.data, host)
        except Exception as exc:  # noqa: BLE001
            logger.error("action=%s host=%s %s", action.id or action.type, host.name, exc)
            result = self._failed(host, action, play, exc)
            return self._register(host, action, result, operation)

        operation_cls = self.registry.get(action.type)
        if not operation_cls:
            detail = f"unknown operation '{action.type}'"
            logger.warning(detail)
            result = self._result(host, action, play, failed=True, details=detail, error="PlanError")
            return self._register(host, action, result, operation)

        try:
            operation = operation_cls(data)
        except Exception as exc:  # noqa: BLE001
            logger.error("action=%s host=%s invalid: %s", action.type, host.name, exc)
            result = self._failed(host, action, play, exc, data=data, default="PlanError")
            return self._register(host, action, result, operation)

        operation.lookup_variable = lambda name: scope.resolve(name, host)

        become = action.become if action.become is not None else play.become
        action_executor = executor.configured(become=become, timeout=action.timeout)
        always_run = action.always_run if action.always_run is not None else operation.always_run

        probe_note = ""
        if not always_run:
            satisfied, probe_note = self._evaluate(host, action_executor, operation, action)
            if satisfied:
                result = self._result(host, action, play, details="noop", data=data)
                return self._register(host, action, result, operation)

        if self.dry_run and operation.mutates_host:
            notified.update(action.notify)
            result = self._result(
                host, action, play, changed=True, details=f"{probe_note}would apply (dry-run)", data=data
            )
            return self._register(host, action, result, operation)

        try:
            detail = operation.apply(host, action_executor)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "action=%s host=%s failed: %s", action.id or action.type, host.name, exc, exc_info=True
            )
            result = self._failed(host, action, play, exc, data=data, output=operation.output)
            return self._register(host, action, result, operation)

        self.facts.update(host.name, operation.published)
        changed = operation.mutates_host
        if changed:
            notified.update(action.notify)
        result = self._result(
            host,
            action,
            play,
            changed=changed,
            details=f"{probe_note}{detail}",
            data=data,
            output=operation.output,
        )
        return self._register(host, action, result, operation)

    def _evaluate(
        self,
        host: HostConfig,
        executor: Executor,
        operation: Operation,
        action: ActionSpec,
    ) -> tuple[bool, str]:
        """Probe current state into the fact store, then apply the predicate."""

        try:
            observed = operation.probe(host, executor)
        except Exception as exc:  # noqa: BLE001
            # Unknown state is treated as "not yet converged".
            logger.warning(
                "action=%s host=%s probe failed, applying: %s",
                action.id or action.type,
                host.name,
                describe_error(exc),
            )
            return False, f"probe failed ({describe_error(exc)}); "
        self.facts.update(host.name, observed)
        try:
            return bool(operation.is_satisfied(self.facts.snapshot(host.name))), ""
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "action=%s host=%s idempotency check failed, applying: %s",
                action.id or action.type,
                host.name,
                describe_error(exc),
            )
            return False, f"check failed ({describe_error(exc)}); "

    def _register(
        self,
        host: HostConfig,
        action: ActionSpec,
        result: ActionResult,
        operation: Optional[Operation],
    ) -> ActionResult:
        if action.ignore_errors and result.failed:
            result.ignored = True
        if action.register:
            prefix = action.register
            self.facts.update(
                host.name,
                {
                    f"{prefix}.status": result.status,
                    f"{prefix}.changed": result.changed,
                    f"{prefix}.failed": result.failed,
                    f"{prefix}.skipped": result.skipped,
                    f"{prefix}.output": result.output.strip(),
                    f"{prefix}.rc": operation.returncode if operation is not None else None,
                },
            )
        return result

    def _failed(
        self,
        host: HostConfig,
        action: ActionSpec,
        play: PlaySpec,
        exc: BaseException,
        *,
        data: Optional[dict[str, Any]] = None,
        output: str = "",
        default: str = "ApplyFailure",
    ) -> ActionResult:
        return self._result(
            host,
            action,
            play,
            failed=True,
            details=describe_error(exc),
            error=error_kind(exc, default),
            data=data,
            output=output,
        )

    @staticmethod
    def _result(
        host: HostConfig,
        action: ActionSpec,
        play: PlaySpec,
        *,
        changed: bool = False,
        failed: bool = False,
        skipped: bool = False,
        details: str = "",
        error: Optional[str] = None,
        data: Optional[dict[str, Any]] = None,
        output: str = "",
    ) -> ActionResult:
        return ActionResult(
            host=host.name,
            action=action.type,
            changed=changed,
            details=details,
            failed=failed,
            resource=resource_name(data if data is not None else action.data),
            skipped=skipped,
            output=output,
            error=error,
            action_id=action.id,
            play=play.name,
        )
