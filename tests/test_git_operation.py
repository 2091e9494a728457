from pathlib import Path

import pytest

from marionette_automation.errors import ProbeFailure
from marionette_automation.executors import CommandResult, Executor
from marionette_automation.operations.git import GitOperation
from marionette_automation.types import HostConfig

OLD = "1" * 40
NEW = "2" * 40


class GitHost(Executor):
    def __init__(self, checkout: str | None = None, remote: str = NEW, listing: str | None = None):
        super().__init__(HostConfig("web1"))
        self.checkout = checkout
        self.remote = remote
        self.listing = listing
        self.commands: list[list[str]] = []

    def path_kind(self, path: Path) -> str:
        return "directory" if self.checkout is not None else "absent"

    def _execute(self, command, *, env, cwd, timeout):  # noqa: ARG002
        self.commands.append(command)
        if command[1] == "ls-remote":
            listing = self.listing if self.listing is not None else f"{self.remote}\trefs/heads/main\n"
            return CommandResult(command, listing, "", 0)
        if command[-2:] == ["rev-parse", "HEAD"]:
            return CommandResult(command, f"{self.checkout}\n", "", 0)
        if command[1] == "clone" or "FETCH_HEAD" in command:
            self.checkout = self.remote
        return CommandResult(command, "", "", 0)


SPEC = {"repo": "https://git.example.com/api.git", "dest": "/srv/api", "version": "main"}


def test_fresh_clone() -> None:
    host = GitHost()
    op = GitOperation(dict(SPEC))

    facts = op.probe(HostConfig("web1"), host)
    assert facts == {"git./srv/api.revision": None, "git./srv/api.remote_revision": NEW}
    assert op.is_satisfied(facts) is False

    assert op.apply(HostConfig("web1"), host) == f"cloned none->{NEW}"
    assert ["git", "clone", "--branch", "main", SPEC["repo"], "/srv/api"] in host.commands


def test_up_to_date_checkout_is_satisfied() -> None:
    host = GitHost(checkout=NEW)
    op = GitOperation(dict(SPEC))

    assert op.is_satisfied(op.probe(HostConfig("web1"), host)) is True


def test_stale_checkout_fast_forwards() -> None:
    host = GitHost(checkout=OLD)
    op = GitOperation(dict(SPEC))

    assert op.apply(HostConfig("web1"), host) == f"updated {OLD}->{NEW}"
    assert ["git", "-C", "/srv/api", "merge", "--ff-only", "FETCH_HEAD"] in host.commands
    assert op.published["git./srv/api.revision"] == NEW


def test_force_resets_hard() -> None:
    host = GitHost(checkout=OLD)
    op = GitOperation({**SPEC, "force": True})

    op.apply(HostConfig("web1"), host)

    assert ["git", "-C", "/srv/api", "reset", "--hard", "FETCH_HEAD"] in host.commands


def test_pinned_sha_skips_ls_remote() -> None:
    host = GitHost(checkout=NEW)
    op = GitOperation({**SPEC, "version": NEW})

    assert op.is_satisfied(op.probe(HostConfig("web1"), host)) is True
    assert not any(cmd[1] == "ls-remote" for cmd in host.commands)


def test_unknown_ref_is_a_probe_failure() -> None:
    op = GitOperation({**SPEC, "version": "release-9"})

    with pytest.raises(ProbeFailure):
        op.probe(HostConfig("web1"), GitHost())


def test_annotated_tag_compares_the_peeled_commit() -> None:
    tag_object = "3" * 40
    listing = f"{tag_object}\trefs/tags/v1.4.0\n{NEW}\trefs/tags/v1.4.0^{{}}\n"
    host = GitHost(checkout=NEW, listing=listing)
    op = GitOperation({**SPEC, "version": "v1.4.0"})

    facts = op.probe(HostConfig("web1"), host)

    assert facts["git./srv/api.remote_revision"] == NEW
    assert op.is_satisfied(facts) is True


@pytest.mark.parametrize("spec", [{"dest": "/srv/api"}, {"repo": "https://git.example.com/api.git"}])
def test_invalid_specs_rejected(spec: dict) -> None:
    with pytest.raises(ValueError):
        GitOperation(spec)
