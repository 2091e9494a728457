import pytest

from marionette_automation.errors import ApplyFailure, CommandTimeout
from marionette_automation.executors import CommandResult, Executor
from marionette_automation.operations import wait_for as wait_for_module
from marionette_automation.operations.wait_for import WaitForOperation
from marionette_automation.types import HostConfig


class PortHost(Executor):
    """Answers port and URL checks from a scripted sequence of outcomes."""

    def __init__(self, outcomes, **kwargs):
        super().__init__(HostConfig("db1"), **kwargs)
        self.outcomes = list(outcomes)
        self.commands: list[list[str]] = []

    def _execute(self, command, *, env, cwd, timeout):  # noqa: ARG002
        self.commands.append(command)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if outcome == "hang":
            raise CommandTimeout(command, timeout)
        if command[0] == "curl":
            return CommandResult(command, str(outcome), "", 0)
        return CommandResult(command, "", "", 0 if outcome else 1)


@pytest.fixture
def clock(monkeypatch):
    now = [0.0]
    monkeypatch.setattr(wait_for_module.time, "monotonic", lambda: now[0])
    monkeypatch.setattr(wait_for_module.time, "sleep", lambda seconds: now.__setitem__(0, now[0] + seconds))
    return now


def test_open_port_is_satisfied() -> None:
    host = PortHost([True])
    op = WaitForOperation({"name": "mongod", "port": 27017})

    facts = op.probe(HostConfig("db1"), host)

    assert facts == {"wait_for.127.0.0.1:27017.ready": True}
    assert op.is_satisfied(facts) is True
    assert host.commands[0] == ["bash", "-c", 'exec 3<>"/dev/tcp/$0/$1"', "127.0.0.1", "27017"]


def test_waits_until_port_opens(clock) -> None:
    host = PortHost([False, "hang", False, True])
    op = WaitForOperation({"port": 27017, "delay": 2, "interval": 3})

    assert op.apply(HostConfig("db1"), host) == "started after 9s"
    assert op.published == {"wait_for.127.0.0.1:27017.ready": True}
    assert op.mutates_host is False


def test_times_out(clock) -> None:
    op = WaitForOperation({"port": 3000, "timeout": 10, "interval": 4})

    with pytest.raises(ApplyFailure, match="timed out after 10s waiting for 127.0.0.1:3000 to be started"):
        op.apply(HostConfig("web1"), PortHost([False]))


def test_waits_for_port_to_close(clock) -> None:
    op = WaitForOperation({"port": 27017, "state": "stopped"})

    assert op.is_satisfied({"wait_for.127.0.0.1:27017.ready": True}) is False
    assert op.apply(HostConfig("db1"), PortHost([True, False])) == "stopped after 1s"


def test_url_check_compares_status(clock) -> None:
    host = PortHost([502, 200])
    op = WaitForOperation({"url": "http://127.0.0.1:3000/health"})

    assert op.is_satisfied(op.probe(HostConfig("web1"), host)) is False
    assert op.apply(HostConfig("web1"), host) == "started after 0s"
    assert host.commands[0][0] == "curl"


def test_dry_run_does_not_wait() -> None:
    host = PortHost([False], dry_run=True)
    op = WaitForOperation({"port": 3000})

    assert op.apply(HostConfig("web1"), host) == "would wait for 127.0.0.1:3000 (dry-run)"
    assert host.commands == []


@pytest.mark.parametrize(
    "spec",
    [
        {},
        {"port": 80, "url": "http://localhost/"},
        {"port": "http"},
        {"port": 80, "state": "listening"},
        {"url": "http://localhost/", "state": "stopped"},
    ],
)
def test_invalid_specs_rejected(spec: dict) -> None:
    with pytest.raises(ValueError):
        WaitForOperation(spec)
