from marionette_automation.facts import FactStore
from marionette_automation.types import HostConfig


def test_reset_seeds_inventory_facts() -> None:
    store = FactStore()
    store.reset([HostConfig("db1", address="10.0.0.5", groups=["db"]), HostConfig("web1")])

    assert store.get("db1", "address") == "10.0.0.5"
    assert store.get("db1", "groups") == ["db"]
    assert store.get("web1", "inventory_hostname") == "web1"
    # Hosts without an address are reached by name.
    assert store.get("web1", "address") == "web1"


def test_namespaces_are_isolated() -> None:
    store = FactStore()
    store.set("db1", "package.mongodb-org.version", "7.0.6")

    assert store.has("db1", "package.mongodb-org.version")
    assert not store.has("web1", "package.mongodb-org.version")
    assert store.get("web1", "package.mongodb-org.version", "missing") == "missing"


def test_update_overwrites_and_snapshot_is_a_copy() -> None:
    store = FactStore()
    store.update("web1", {"service.nginx.active": False})
    store.update("web1", {"service.nginx.active": True})

    snapshot = store.snapshot("web1")
    snapshot["service.nginx.active"] = "tampered"

    assert store.get("web1", "service.nginx.active") is True


def test_reset_drops_previous_run() -> None:
    store = FactStore()
    store.set("web1", "stale", 1)
    store.reset([HostConfig("web1")])

    assert not store.has("web1", "stale")
