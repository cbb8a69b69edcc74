from __future__ import annotations

import base64
import json
import os
import threading
from typing import Any, Iterable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

REDACTED = "********"


class SecretError(RuntimeError):
    """Raised when a secret reference cannot be resolved."""


class SecretResolver:
    """Resolves secret references in variable mappings.

    A reference is a mapping with either ``aws_secret`` (plus an optional
    JSON ``key``), looked up in AWS Secrets Manager, or ``env``, read from
    the process environment. Every resolved value is remembered so it can
    be masked with :meth:`redact`.
    """

    def __init__(self):
        self._cache: dict[tuple[str, Optional[str]], Any] = {}
        self._lock = threading.Lock()
        self.resolved_values: set[str] = set()

    def resolve(self, values: dict[str, Any]) -> dict[str, Any]:
        return {k: self._resolve_value(v) for k, v in values.items()}

    def _resolve_value(self, value: Any) -> Any:
        if isinstance(value, dict):
            if "aws_secret" in value:
                return self._remember(self._resolve_aws_secret(value))
            if "env" in value:
                return self._remember(self._resolve_env(value))
            return {k: self._resolve_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve_value(v) for v in value]
        return value

    def _remember(self, value: Any) -> Any:
        if isinstance(value, str) and value:
            self.resolved_values.add(value)
        return value

    @staticmethod
    def _resolve_env(spec: dict[str, Any]) -> str:
        name = str(spec["env"])
        value = os.environ.get(name)
        if value is None:
            raise SecretError(f"Environment variable {name} is not set")
        return value

    def _resolve_aws_secret(self, spec: dict[str, Any]) -> Any:
        name = str(spec["aws_secret"])
        key = spec.get("key")
        cache_key = (name, key if key is None else str(key))
        with self._lock:
            if cache_key in self._cache:
                return self._cache[cache_key]

        try:
            client = boto3.client("secretsmanager")
            response = client.get_secret_value(SecretId=name)
        except (BotoCoreError, ClientError) as exc:
            raise SecretError(f"Secret {name} could not be read: {exc}") from exc
        secret_str = response.get("SecretString")
        if secret_str is None:
            binary = response.get("SecretBinary")
            if binary is None:
                raise SecretError(f"Secret {name} has no SecretString or SecretBinary")
            secret_str = base64.b64decode(binary).decode()

        value: Any = secret_str
        if key is not None:
            try:
                payload = json.loads(secret_str)
                value = payload[str(key)]
            except (json.JSONDecodeError, KeyError) as exc:
                raise SecretError(f"Secret {name} has no key {key}") from exc

        with self._lock:
            self._cache[cache_key] = value
        return value

    def redact(self, text: str) -> str:
        return redact(text, self.resolved_values)


def is_secret_reference(value: Any) -> bool:
    return isinstance(value, dict) and ("aws_secret" in value or "env" in value)


def redact(text: str, secrets: Iterable[str]) -> str:
    for secret in sorted(secrets, key=len, reverse=True):
        if secret:
            text = text.replace(secret, REDACTED)
    return text
