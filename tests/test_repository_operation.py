from pathlib import Path

import pytest

from marionette_automation.executors import CommandResult, LocalExecutor
from marionette_automation.operations.repository import RepositoryOperation
from marionette_automation.types import HostConfig

MONGO_REPO = "deb [signed-by=/usr/share/keyrings/mongodb.gpg] https://repo.mongodb.org/apt/ubuntu jammy/mongodb-org/7.0 multiverse"


class RecordingExecutor(LocalExecutor):
    """Real file primitives, recorded commands."""

    def __init__(self):
        super().__init__(HostConfig("db1"))
        self.commands: list[list[str]] = []

    def _execute(self, command, *, env, cwd, timeout):  # noqa: ARG002
        self.commands.append(command)
        if command[:2] == ["sh", "-c"] and "gpg --dearmor" in command[2]:
            Path(command[-1]).write_text("keyring")
        return CommandResult(command, "", "", 0)


def test_apt_repository_fetches_key_and_refreshes_cache(tmp_path: Path) -> None:
    keyring = tmp_path / "mongodb.gpg"
    sources = tmp_path / "mongodb-org-7.0.list"
    op = RepositoryOperation(
        {
            "name": "mongodb-org-7.0",
            "repo": MONGO_REPO,
            "key_url": "https://pgp.mongodb.com/server-7.0.asc",
            "keyring": str(keyring),
            "path": str(sources),
        }
    )
    executor = RecordingExecutor()
    assert op.is_satisfied(op.probe(HostConfig("db1"), executor)) is False

    detail = op.apply(HostConfig("db1"), executor)

    assert detail.startswith(f"key->{keyring}")
    assert detail.endswith("cache-updated")
    assert sources.read_text() == MONGO_REPO + "\n"
    assert ["apt-get", "update"] in executor.commands
    assert op.is_satisfied(op.probe(HostConfig("db1"), executor)) is True


def test_unchanged_repository_skips_cache_refresh(tmp_path: Path) -> None:
    sources = tmp_path / "nodesource.list"
    sources.write_text("deb https://deb.nodesource.com/node_20.x nodistro main\n")
    sources.chmod(0o644)
    op = RepositoryOperation(
        {"name": "nodesource", "repo": "deb https://deb.nodesource.com/node_20.x nodistro main", "path": str(sources)}
    )
    executor = RecordingExecutor()

    assert op.apply(HostConfig("web1"), executor) == "noop"
    assert executor.commands == []


def test_yum_repository_renders_stanza() -> None:
    op = RepositoryOperation(
        {
            "name": "nginx-stable",
            "format": "yum",
            "baseurl": "http://nginx.org/packages/centos/$releasever/$basearch/",
            "gpgkey": "https://nginx.org/keys/nginx_signing.key",
            "options": {"module_hotfixes": "true"},
        }
    )

    assert op.path == Path("/etc/yum.repos.d/nginx-stable.repo")
    assert op.render() == (
        "[nginx-stable]\n"
        "name=nginx-stable\n"
        "baseurl=http://nginx.org/packages/centos/$releasever/$basearch/\n"
        "enabled=1\n"
        "gpgcheck=1\n"
        "gpgkey=https://nginx.org/keys/nginx_signing.key\n"
        "module_hotfixes=true\n"
    )


def test_absent_repository_is_removed(tmp_path: Path) -> None:
    sources = tmp_path / "old.list"
    sources.write_text("deb http://old.example/ stable main\n")
    op = RepositoryOperation({"name": "old", "state": "absent", "path": str(sources)})

    assert op.apply(HostConfig("db1"), RecordingExecutor()) == "removed"
    assert not sources.exists()


@pytest.mark.parametrize(
    "spec",
    [
        {"repo": "deb x"},
        {"name": "x", "format": "zypper"},
        {"name": "x"},
        {"name": "x", "format": "yum"},
    ],
)
def test_invalid_specs_rejected(spec: dict) -> None:
    with pytest.raises(ValueError):
        RepositoryOperation(spec)
