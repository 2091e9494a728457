from pathlib import Path
import textwrap

import pytest

from marionette_automation.dsl import DSLParseError
from marionette_automation.errors import PlanError
from marionette_automation.inventory import InventoryLoader

TIERED_PLAN = """
[hosts.db1]
connection = "ssh"
address = "10.0.0.5"
user = "ubuntu"
groups = ["db"]

[hosts.web1]
connection = "ssh"
address = "10.0.1.5"

[hosts.web2]
connection = "ssh"
address = "10.0.1.6"
groups = ["app"]

[groups]
app = ["web1"]

[defaults]
node_major = 20

[[plays]]
name = "application"
hosts = "app"
become = true

  [plays.vars]
  db_host = { group = "db", fact = "address" }

  [[plays.actions]]
  type = "package"
  name = "nodejs"
  notify = "restart api"
  when = { fact = "inventory_hostname", matches = "^web" }

  [[plays.actions]]
  type = "file"
  path = "/etc/nginx/sites-enabled/api.conf"
  template = "api.conf.j2"
  timeout = 30

  [[plays.handlers]]
  name = "restart api"

    [plays.handlers.action]
    type = "process"
    name = "api"
    script = "/srv/api/server.js"
"""


def write(tmp_path: Path, name: str, text: str) -> Path:
    path = tmp_path / name
    path.write_text(textwrap.dedent(text).strip() + "\n")
    return path


def test_loads_default_local_host(tmp_path: Path) -> None:
    plan_path = write(
        tmp_path,
        "plan.toml",
        """
        [[plays]]
        name = "basic"

          [[plays.actions]]
          type = "file"
          path = "/tmp/demo"
        """,
    )

    plan = InventoryLoader().load(plan_path)

    assert set(plan.hosts) == {"local"}
    assert plan.plays[0].hosts == "all"
    assert plan.plays[0].actions[0].id == "file./tmp/demo"


def test_loads_tiered_plan(tmp_path: Path) -> None:
    plan = InventoryLoader().load(write(tmp_path, "plan.toml", TIERED_PLAN))

    # Explicit membership first, then hosts that name the group themselves.
    assert plan.groups == {"app": ["web1", "web2"], "db": ["db1"]}
    assert plan.hosts["db1"].options == {"user": "ubuntu"}
    assert plan.hosts["web1"].groups == ["app"]
    assert plan.defaults == {"node_major": 20}

    play = plan.plays[0]
    assert play.become is True
    assert play.vars["db_host"] == {"group": "db", "fact": "address"}
    package, template = play.actions
    assert package.notify == ["restart api"]
    assert package.when == {"fact": "inventory_hostname", "matches": "^web"}
    assert "notify" not in package.data
    assert template.timeout == 30.0
    assert template.data["_plan_dir"] == str(tmp_path)
    assert play.handlers[0].action.id == "handler.restart api"
    assert play.handlers[0].action.data["script"] == "/srv/api/server.js"


def test_inventory_file_overrides_plan_hosts(tmp_path: Path) -> None:
    plan_path = write(tmp_path, "plan.toml", TIERED_PLAN)
    inventory = write(
        tmp_path,
        "staging.toml",
        """
        [hosts.db1]
        connection = "ssh"
        address = "192.168.50.10"
        groups = ["db"]
        """,
    )

    plan = InventoryLoader().load(plan_path, inventory=inventory)

    assert plan.hosts["db1"].address == "192.168.50.10"
    assert "web1" in plan.hosts


def test_template_dir_is_attached(tmp_path: Path) -> None:
    loader = InventoryLoader(template_dir=Path("/opt/marionette/templates"))

    plan = loader.load(write(tmp_path, "plan.toml", TIERED_PLAN))

    assert plan.plays[0].actions[1].data["_template_dir"] == "/opt/marionette/templates"


@pytest.mark.parametrize(
    "snippet, message",
    [
        ('[[plays]]\nname = "x"\n[[plays.actions]]\npath = "/tmp/demo"', "missing a type"),
        ('[[plays]]\nname = "x"\nhosts = "nowhere"', "unknown group or host"),
        ('[[plays]]\nname = "x"\nfailure_policy = "retry"', "failure_policy"),
        (
            '[[plays]]\nname = "x"\n[[plays.actions]]\ntype = "file"\npath = "/a"\nid = "a"\n'
            '[[plays.actions]]\ntype = "file"\npath = "/b"\nid = "a"',
            "twice",
        ),
        ('[[plays]]\nname = "x"\n[[plays.actions]]\ntype = "file"\npath = "/a"\nnotify = "ghost"', "unknown handler"),
        ('[groups]\ndb = ["ghost"]', "unknown host"),
        ('[hosts.a]\nconnection = "telnet"', "unknown connection"),
    ],
)
def test_invalid_plans_raise(tmp_path: Path, snippet: str, message: str) -> None:
    plan_path = tmp_path / "bad.toml"
    plan_path.write_text(snippet + "\n")

    with pytest.raises(PlanError) as excinfo:
        InventoryLoader().load(plan_path)

    assert message in str(excinfo.value)


def test_toml_syntax_error_names_the_file(tmp_path: Path) -> None:
    plan_path = tmp_path / "broken.toml"
    plan_path.write_text("[[plays]\nname = 'x'\n")

    with pytest.raises(PlanError) as excinfo:
        InventoryLoader().load(plan_path)

    assert str(plan_path) in str(excinfo.value)


def test_loader_accepts_dsl(tmp_path: Path) -> None:
    plan_path = write(
        tmp_path,
        "plan.mar",
        """
        node 'web1' { address => '10.0.1.5', groups => ['app'] }
        play 'demo' on 'app' {
          package { 'git':
            ensure => present
          }
        }
        """,
    )

    plan = InventoryLoader().load(plan_path)

    assert plan.groups == {"app": ["web1"]}
    assert plan.plays[0].actions[0].type == "package"
    assert plan.plays[0].actions[0].data["state"] == "present"


def test_dsl_includes_are_expanded(tmp_path: Path) -> None:
    write(tmp_path, "nodes.mar", "node 'db1' { groups => ['db'] }")
    plan_path = write(
        tmp_path,
        "site.mar",
        """
        include 'nodes.mar'
        play 'db' on 'db' {
          service { 'mongod': ensure => 'running' }
        }
        """,
    )

    plan = InventoryLoader().load(plan_path)

    assert plan.groups["db"] == ["db1"]


def test_dsl_errors_carry_location_and_snippet(tmp_path: Path) -> None:
    plan_path = write(tmp_path, "bad.mar", "play 'x' on 'all' {\n  file {\n}\n")

    with pytest.raises(DSLParseError) as excinfo:
        InventoryLoader().load(plan_path)

    assert f"{plan_path}:3:" in str(excinfo.value)
    assert excinfo.value.line == 3


def test_example_site_plan_loads() -> None:
    site = Path(__file__).resolve().parents[1] / "examples" / "site.mar"

    plan = InventoryLoader().load(site)

    assert plan.groups == {"app": ["web1", "web2"], "db": ["db1"]}
    database, application = plan.plays
    assert [h.name for h in database.handlers] == ["restart mongod"]
    assert application.vars["db_host"] == {"group": "db", "fact": "address"}
    assert database.actions[2].data["regexp"] == "^\\s*bindIp:"
    assert application.actions[2].data["manager"] == "npm"
    assert database.actions[-1].type == "wait_for"
    assert database.actions[-1].data["port"] == 27017


def test_repeated_resources_get_distinct_ids(tmp_path: Path) -> None:
    plan_path = write(
        tmp_path,
        "plan.toml",
        """
        [[plays]]
        name = "app"

        [[plays.actions]]
        type = "line"
        path = "/etc/environment"
        line = "DB_HOST=10.0.0.5"
        regexp = "^DB_HOST="

        [[plays.actions]]
        type = "line"
        path = "/etc/environment"
        line = "PORT=3000"
        regexp = "^PORT="

        [[plays.actions]]
        type = "line"
        path = "/etc/environment"
        id = "line./etc/environment#2"
        line = "NODE_ENV=production"
        """,
    )

    plan = InventoryLoader().load(plan_path)

    assert [a.id for a in plan.plays[0].actions] == [
        "line./etc/environment",
        "line./etc/environment#3",
        "line./etc/environment#2",
    ]
