# -----------------------------------------------------------------------------
# REGISTRY AUTH
# -----------------------------------------------------------------------------
# Responsibility: Hand the Artifact Builder the address and login for the
# registry it pushes to.
#
# EcrRegistryAuth exchanges AWS credentials for a short-lived ECR token
# (the same exchange `aws ecr get-login-password` performs).
# StaticRegistryAuth reads a username/password pair from the secrets
# provider for any other registry.
# -----------------------------------------------------------------------------

import base64
from dataclasses import dataclass
from typing import Any, Protocol

from botocore.exceptions import ClientError
from rich.console import Console

from convoy.infra.secrets import SecretNotFoundError, SecretsProvider

console = Console()


class RegistryAuthError(Exception):
    """Raised when registry credentials cannot be obtained."""

    pass


@dataclass
class RegistryCredentials:
    """Address and login for one registry."""

    registry: str
    username: str
    password: str

    def auth_config(self) -> dict[str, str]:
        """Shape expected by docker-py's push(auth_config=...)."""
        return {"username": self.username, "password": self.password}


class RegistryAuth(Protocol):
    def credentials(self) -> RegistryCredentials:
        ...


class EcrRegistryAuth:
    """Login for the account's private ECR registry."""

    def __init__(self, client: Any) -> None:
        """
        Args:
            client: A boto3 ECR client.
        """
        self._client = client

    def credentials(self) -> RegistryCredentials:
        try:
            response = self._client.get_authorization_token()
        except ClientError as e:
            console.print(f"[red][REGISTRY] ECR login failed: {e}[/red]")
            raise RegistryAuthError(f"ECR login failed: {e}") from e

        data = response["authorizationData"][0]
        token = base64.b64decode(data["authorizationToken"]).decode("utf-8")
        username, _, password = token.partition(":")
        registry = data["proxyEndpoint"].removeprefix("https://").removeprefix("http://")
        console.print(f"[green][REGISTRY] ECR login ready: {registry}[/green]")
        return RegistryCredentials(registry=registry, username=username, password=password)


class StaticRegistryAuth:
    """Login for a registry whose credentials live in the secrets provider."""

    def __init__(
        self,
        registry: str,
        secrets: SecretsProvider,
        username_key: str = "REGISTRY_USERNAME",
        password_key: str = "REGISTRY_PASSWORD",
    ) -> None:
        self._registry = registry
        self._secrets = secrets
        self._username_key = username_key
        self._password_key = password_key

    def credentials(self) -> RegistryCredentials:
        try:
            username = self._secrets.get(self._username_key)
            password = self._secrets.get(self._password_key)
        except SecretNotFoundError as e:
            raise RegistryAuthError(f"Registry login for {self._registry} unavailable: {e}") from e
        return RegistryCredentials(registry=self._registry, username=username, password=password)
