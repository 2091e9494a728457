import base64

import pytest

from marionette_automation.secrets import SecretResolver


class FakeClient:
    def __init__(self, secrets: dict):
        self.secrets = secrets
        self.calls = 0

    def get_secret_value(self, SecretId):
        self.calls += 1
        return {"SecretString": self.secrets[SecretId]}


class FakeBoto3:
    def __init__(self, client: FakeClient):
        self._client = client

    def client(self, name):
        assert name == "secretsmanager"
        return self._client


@pytest.fixture
def fake_client(monkeypatch):
    client = FakeClient({"plain": "mypassword", "mongo": '{"username": "app", "password": "s3cret"}'})
    monkeypatch.setattr("marionette_automation.secrets.boto3", FakeBoto3(client))
    return client


def test_secret_resolver_plaintext_with_key(fake_client):
    resolver = SecretResolver()

    values = resolver.resolve({"password": {"aws_secret": "plain", "key": "password"}})
    assert values["password"] == "mypassword"


def test_secret_resolver_json_key_and_cache(fake_client):
    resolver = SecretResolver()

    first = resolver.resolve_value({"aws_secret": "mongo", "key": "password"})
    second = resolver.resolve_value([{"aws_secret": "mongo", "key": "password"}])

    assert first == "s3cret"
    assert second == ["s3cret"]
    assert fake_client.calls == 1


def test_secret_resolver_requires_boto3(monkeypatch):
    monkeypatch.setattr("marionette_automation.secrets.boto3", None)

    with pytest.raises(RuntimeError):
        SecretResolver().resolve_value({"aws_secret": "plain"})


def test_secret_fetched_once_for_several_keys(fake_client):
    resolver = SecretResolver()

    values = resolver.resolve(
        {
            "user": {"aws_secret": "mongo", "key": "username"},
            "password": {"aws_secret": "mongo", "key": "password"},
        }
    )

    assert values == {"user": "app", "password": "s3cret"}
    assert fake_client.calls == 1


def test_missing_field_raises(fake_client):
    with pytest.raises(KeyError):
        SecretResolver().resolve_value({"aws_secret": "mongo", "key": "port"})


def test_binary_secret_is_decoded(monkeypatch):
    class BinaryClient:
        def get_secret_value(self, SecretId):
            return {"SecretBinary": base64.b64encode(b"tls-key").decode()}

    class FakeModule:
        def client(self, name):
            return BinaryClient()

    monkeypatch.setattr("marionette_automation.secrets.boto3", FakeModule())

    assert SecretResolver().resolve_value({"aws_secret": "nginx/tls"}) == "tls-key"
