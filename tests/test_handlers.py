from marionette_automation.converge import HostConverger
from marionette_automation.errors import ApplyFailure
from marionette_automation.executors import CommandResult, Executor
from marionette_automation.facts import FactStore
from marionette_automation.handlers import HandlerDispatcher
from marionette_automation.operations.base import Operation
from marionette_automation.types import ActionSpec, HandlerSpec, HostConfig, Plan, PlaySpec
from marionette_automation.variables import VariableResolver


class StubExecutor(Executor):
    def _execute(self, command, *, env, cwd, timeout):  # noqa: ARG002
        return CommandResult(command, "", "", 0)


fired: list[str] = []


class RecordOperation(Operation):
    def apply(self, host, executor) -> str:
        if self.spec.get("fail"):
            raise ApplyFailure("reload failed")
        fired.append(self.spec["name"])
        return "done"


class AlreadyRunningOperation(RecordOperation):
    def is_satisfied(self, facts) -> bool:
        return True


def handler(name: str, **extra) -> HandlerSpec:
    return HandlerSpec(
        name=name,
        action=ActionSpec(type="record", data={"name": name, **extra}, id=f"handler.{name}"),
    )


def build(handlers, *, dry_run=False):
    fired.clear()
    host = HostConfig("web1")
    play = PlaySpec(name="web", hosts="web1", actions=[], handlers=handlers)
    plan = Plan(hosts={"web1": host}, plays=[play])
    facts = FactStore()
    facts.reset([host])
    scope = VariableResolver(plan, facts).scope(play)
    registry = {"record": RecordOperation, "running": AlreadyRunningOperation}
    converger = HostConverger(facts, registry=registry, dry_run=dry_run)
    return HandlerDispatcher(converger), host, StubExecutor(host, dry_run=dry_run), play, scope


def test_handlers_fire_in_declared_order_once() -> None:
    dispatcher, host, executor, play, scope = build([handler("reload nginx"), handler("restart app")])
    pending = {"restart app", "reload nginx"}

    results = dispatcher.flush(host, executor, play, scope, pending)

    assert fired == ["reload nginx", "restart app"]
    assert [r.action_id for r in results] == ["handler.reload nginx", "handler.restart app"]
    assert pending == set()


def test_unnotified_handlers_do_not_fire() -> None:
    dispatcher, host, executor, play, scope = build([handler("reload nginx"), handler("restart app")])

    results = dispatcher.flush(host, executor, play, scope, {"restart app"})

    assert fired == ["restart app"]
    assert len(results) == 1


def test_handler_failure_is_reported_as_handler_failure() -> None:
    dispatcher, host, executor, play, scope = build([handler("reload nginx", fail=True)])

    (result,) = dispatcher.flush(host, executor, play, scope, {"reload nginx"})

    assert result.failed is True
    assert result.error == "HandlerFailure"


def test_handler_can_notify_a_later_handler() -> None:
    first = handler("render config")
    first.action.notify = ["reload nginx"]
    dispatcher, host, executor, play, scope = build([first, handler("reload nginx")])

    dispatcher.flush(host, executor, play, scope, {"render config"})

    assert fired == ["render config", "reload nginx"]


def test_dry_run_does_not_apply_handlers() -> None:
    dispatcher, host, executor, play, scope = build([handler("reload nginx")], dry_run=True)

    (result,) = dispatcher.flush(host, executor, play, scope, {"reload nginx"})

    assert fired == []
    assert "would apply" in result.details


def test_notified_handler_applies_even_when_state_holds() -> None:
    restart = HandlerSpec(
        name="restart nginx",
        action=ActionSpec(type="running", data={"name": "nginx"}, id="handler.restart nginx"),
    )
    dispatcher, host, executor, play, scope = build([restart])

    (result,) = dispatcher.flush(host, executor, play, scope, {"restart nginx"})

    assert fired == ["nginx"]
    assert result.changed is True
    assert play.handlers[0].action.always_run is None
