from __future__ import annotations

import base64
import json
import logging
import threading
from typing import Any, Optional

try:  # pragma: no cover
    import boto3  # type: ignore
except ImportError:  # pragma: no cover
    boto3 = None

logger = logging.getLogger(__name__)


def is_secret_reference(value: Any) -> bool:
    return isinstance(value, dict) and "aws_secret" in value


class SecretResolver:
    """Resolves ``{aws_secret = "name", key = "field"}`` references.

    One resolver serves every host of a run, so each secret is fetched from
    Secrets Manager once and shared between worker threads.
    """

    def __init__(self) -> None:
        self._secrets: dict[str, str] = {}
        self._lock = threading.Lock()
        self._client: Any = None

    def resolve(self, values: dict[str, Any]) -> dict[str, Any]:
        return {k: self.resolve_value(v) for k, v in values.items()}

    def resolve_value(self, value: Any) -> Any:
        if is_secret_reference(value):
            key = value.get("key")
            name = str(value["aws_secret"])
            return self._select(name, self._secret(name), None if key is None else str(key))
        if isinstance(value, dict):
            return {k: self.resolve_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(v) for v in value]
        return value

    def _secret(self, name: str) -> str:
        with self._lock:
            if name not in self._secrets:
                self._secrets[name] = self._fetch(name)
            return self._secrets[name]

    def _fetch(self, name: str) -> str:
        if boto3 is None:
            raise RuntimeError("boto3 is required to resolve aws_secret references")
        if self._client is None:
            self._client = boto3.client("secretsmanager")
        logger.debug("Fetching secret %s", name)
        response = self._client.get_secret_value(SecretId=name)
        if response.get("SecretString") is not None:
            return response["SecretString"]
        binary = response.get("SecretBinary")
        if binary is None:
            raise RuntimeError(f"Secret {name} has no SecretString or SecretBinary")
        return base64.b64decode(binary).decode()

    @staticmethod
    def _select(name: str, secret: str, key: Optional[str]) -> Any:
        if key is None:
            return secret
        try:
            payload = json.loads(secret)
        except json.JSONDecodeError:
            # Plain-text secrets ignore the key.
            return secret
        if not isinstance(payload, dict):
            return secret
        if key not in payload:
            raise KeyError(f"Secret {name} has no field '{key}'")
        return payload[key]
