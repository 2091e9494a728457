import pytest

from marionette_automation.errors import ProbeFailure
from marionette_automation.executors import CommandResult, Executor
from marionette_automation.operations.service import ServiceOperation
from marionette_automation.types import HostConfig


class FakeSystemCtl:
    def __init__(self, enabled: bool = False, active: bool = False, available: bool = True):
        self.enabled = enabled
        self.active = active
        self._available = available
        self.actions: list[str] = []

    def available(self, executor) -> bool:  # noqa: ARG002
        return self._available

    def is_enabled(self, executor, service: str) -> bool:  # noqa: ARG002
        return self.enabled

    def is_active(self, executor, service: str) -> bool:  # noqa: ARG002
        return self.active

    def enable(self, executor, service: str) -> None:  # noqa: ARG002
        self.enabled = True
        self.actions.append("enable")

    def disable(self, executor, service: str) -> None:  # noqa: ARG002
        self.enabled = False
        self.actions.append("disable")

    def start(self, executor, service: str) -> None:  # noqa: ARG002
        self.active = True
        self.actions.append("start")

    def stop(self, executor, service: str) -> None:  # noqa: ARG002
        self.active = False
        self.actions.append("stop")

    def restart(self, executor, service: str) -> None:  # noqa: ARG002
        self.actions.append("restart")

    def reload(self, executor, service: str) -> None:  # noqa: ARG002
        self.actions.append("reload")


class DummyExecutor:
    def __init__(self):
        self.host = HostConfig(name="db1")
        self.dry_run = False


def make(spec: dict, **state) -> tuple[ServiceOperation, FakeSystemCtl]:
    op = ServiceOperation(spec)
    fake = FakeSystemCtl(**state)
    op.systemctl = fake
    return op, fake


def test_service_enable_and_start():
    op, fake = make({"name": "mongod", "enabled": True, "state": "running"})

    facts = op.probe(HostConfig("db1"), DummyExecutor())
    assert op.is_satisfied(facts) is False

    details = op.apply(HostConfig("db1"), DummyExecutor())

    assert details == "enabled, started"
    assert fake.actions == ["enable", "start"]
    assert op.published == {"service.mongod.active": True, "service.mongod.enabled": True}


def test_running_enabled_service_is_satisfied():
    op, _ = make({"name": "mongod", "enabled": True, "state": "running"}, enabled=True, active=True)

    assert op.is_satisfied(op.probe(HostConfig("db1"), DummyExecutor())) is True


def test_stop_and_disable():
    op, fake = make({"name": "nginx", "enabled": False, "state": "stopped"}, enabled=True, active=True)

    details = op.apply(HostConfig("web1"), DummyExecutor())

    assert details == "disabled, stopped"
    assert fake.actions == ["disable", "stop"]


@pytest.mark.parametrize("state, action", [("restarted", "restart"), ("reloaded", "reload")])
def test_restart_and_reload_are_never_satisfied(state: str, action: str):
    op, fake = make({"name": "nginx", "state": state}, enabled=True, active=True)

    assert op.is_satisfied({"service.nginx.active": True, "service.nginx.enabled": True}) is False
    assert op.apply(HostConfig("web1"), DummyExecutor()) == f"{action}ed"
    assert fake.actions == [action]


def test_missing_systemctl_is_a_probe_failure():
    op, _ = make({"name": "mongod", "state": "running"}, available=False)

    with pytest.raises(ProbeFailure):
        op.probe(HostConfig("db1"), DummyExecutor())


def test_real_systemctl_commands():
    class RecordingExecutor(Executor):
        def __init__(self):
            super().__init__(HostConfig("db1"))
            self.commands: list[list[str]] = []

        def _execute(self, command, *, env, cwd, timeout):  # noqa: ARG002
            self.commands.append(command)
            # Nothing is active or enabled yet.
            rc = 3 if command[1:2] in (["is-active"], ["is-enabled"]) else 0
            return CommandResult(command, "", "", rc)

    executor = RecordingExecutor()
    op = ServiceOperation({"name": "mongod", "state": "running", "enabled": "yes"})

    op.apply(HostConfig("db1"), executor)

    assert ["systemctl", "enable", "mongod"] in executor.commands
    assert ["systemctl", "start", "mongod"] in executor.commands


def test_invalid_state_rejected():
    with pytest.raises(ValueError):
        ServiceOperation({"name": "mongod", "state": "paused"})
