# -----------------------------------------------------------------------------
# SECRETS PROVIDERS
# -----------------------------------------------------------------------------
# Responsibility: Opaque key -> credential lookups.
#
# A provider instance belongs to exactly one run; its cache dies with it.
# Values are never logged. Keys of the form "secret-id:Field" read one
# field out of a JSON secret (e.g. "deploy-user:AccessKeyId").
# -----------------------------------------------------------------------------

import json
import os
from typing import Any, Mapping, Protocol

from botocore.exceptions import ClientError
from rich.console import Console

console = Console()


class SecretNotFoundError(Exception):
    """Raised when a secret key cannot be resolved."""

    def __init__(self, key: str, details: str = "") -> None:
        super().__init__(f"Secret '{key}' not found" + (f": {details}" if details else ""))
        self.key = key


class SecretsProvider(Protocol):
    def get(self, key: str) -> str:
        ...


class EnvSecretsProvider:
    """Secrets read from environment variables (CI secrets, .env)."""

    def __init__(self, environ: Mapping[str, str] | None = None) -> None:
        self._environ = environ if environ is not None else os.environ

    def get(self, key: str) -> str:
        value = self._environ.get(key)
        if value is None or value == "":
            raise SecretNotFoundError(key, "environment variable is not set")
        return value


class SecretsManagerProvider:
    """Secrets read from AWS Secrets Manager, cached for this run only."""

    def __init__(self, client: Any) -> None:
        """
        Args:
            client: A boto3 Secrets Manager client.
        """
        self._client = client
        self._cache: dict[str, str] = {}

    def _secret_string(self, secret_id: str) -> str:
        if secret_id not in self._cache:
            try:
                response = self._client.get_secret_value(SecretId=secret_id)
            except ClientError as e:
                raise SecretNotFoundError(secret_id, str(e)) from e
            self._cache[secret_id] = response["SecretString"]
            console.print(f"[dim][SECRETS] Loaded {secret_id}[/dim]")
        return self._cache[secret_id]

    def get(self, key: str) -> str:
        secret_id, sep, field = key.partition(":")
        raw = self._secret_string(secret_id)
        if not sep:
            return raw

        try:
            document = json.loads(raw)
        except json.JSONDecodeError as e:
            raise SecretNotFoundError(key, "secret is not a JSON document") from e

        if not isinstance(document, dict) or field not in document:
            raise SecretNotFoundError(key, f"field '{field}' missing")
        return str(document[field])

    def clear(self) -> None:
        self._cache.clear()
