import json

import pytest
from botocore.exceptions import ClientError, NoRegionError

from webstack_automation.secrets import REDACTED, SecretError, SecretResolver, is_secret_reference


class FakeBoto3:
    def __init__(self, secrets):
        self.secrets = secrets
        self.calls = 0

    def client(self, name):
        assert name == "secretsmanager"
        parent = self

        class FakeClient:
            def get_secret_value(self, SecretId):
                parent.calls += 1
                return {"SecretString": parent.secrets[SecretId]}

        return FakeClient()


def test_secret_resolver_json_key(monkeypatch):
    fake = FakeBoto3({"prod/mysql": json.dumps({"root": "rootpw", "app": "dbpw"})})
    monkeypatch.setattr("webstack_automation.secrets.boto3", fake)
    resolver = SecretResolver()

    values = resolver.resolve(
        {
            "mysql_root_password": {"aws_secret": "prod/mysql", "key": "root"},
            "db_password": {"aws_secret": "prod/mysql", "key": "app"},
            "web_app_branch": "main",
        }
    )

    assert values == {"mysql_root_password": "rootpw", "db_password": "dbpw", "web_app_branch": "main"}
    assert fake.calls == 2


def test_secret_resolver_caches_lookups(monkeypatch):
    fake = FakeBoto3({"plain": "mypassword"})
    monkeypatch.setattr("webstack_automation.secrets.boto3", fake)
    resolver = SecretResolver()

    resolver.resolve({"a": {"aws_secret": "plain"}})
    resolver.resolve({"b": {"aws_secret": "plain"}})

    assert fake.calls == 1


def test_secret_resolver_missing_key(monkeypatch):
    monkeypatch.setattr("webstack_automation.secrets.boto3", FakeBoto3({"plain": "not-json"}))

    with pytest.raises(SecretError, match="has no key"):
        SecretResolver().resolve({"a": {"aws_secret": "plain", "key": "root"}})


def test_env_reference(monkeypatch):
    monkeypatch.setenv("MYAPP_SECRET_KEY", "s3cr3t")
    resolver = SecretResolver()

    assert resolver.resolve({"app_secret_key": {"env": "MYAPP_SECRET_KEY"}}) == {"app_secret_key": "s3cr3t"}


def test_missing_env_reference(monkeypatch):
    monkeypatch.delenv("MYAPP_MISSING", raising=False)

    with pytest.raises(SecretError, match="MYAPP_MISSING"):
        SecretResolver().resolve({"db_password": {"env": "MYAPP_MISSING"}})


def test_redact_masks_resolved_values(monkeypatch):
    monkeypatch.setenv("MYAPP_DB_PASSWORD", "dbpw")
    resolver = SecretResolver()
    resolver.resolve({"db_password": {"env": "MYAPP_DB_PASSWORD"}})

    assert resolver.redact("mysql failed with dbpw") == f"mysql failed with {REDACTED}"
    assert resolver.redact("nothing secret") == "nothing secret"


def test_is_secret_reference():
    assert is_secret_reference({"env": "X"})
    assert is_secret_reference({"aws_secret": "x"})
    assert not is_secret_reference("plaintext")
    assert not is_secret_reference({"other": 1})


def test_aws_client_error_becomes_secret_error(monkeypatch):
    class MissingSecretClient:
        def get_secret_value(self, SecretId):
            raise ClientError(
                {"Error": {"Code": "ResourceNotFoundException", "Message": "not found"}},
                "GetSecretValue",
            )

    class FakeBoto3:
        def client(self, name):  # noqa: ARG002
            return MissingSecretClient()

    monkeypatch.setattr("webstack_automation.secrets.boto3", FakeBoto3())

    with pytest.raises(SecretError, match="prod/missing could not be read"):
        SecretResolver().resolve({"mysql_root_password": {"aws_secret": "prod/missing"}})


def test_aws_missing_region_becomes_secret_error(monkeypatch):
    class NoRegionBoto3:
        def client(self, name):  # noqa: ARG002
            raise NoRegionError()

    monkeypatch.setattr("webstack_automation.secrets.boto3", NoRegionBoto3())

    with pytest.raises(SecretError):
        SecretResolver().resolve({"mysql_root_password": {"aws_secret": "prod/mysql"}})
