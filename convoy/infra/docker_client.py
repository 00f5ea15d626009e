# -----------------------------------------------------------------------------
# DOCKER PROVIDER
# -----------------------------------------------------------------------------
# Responsibility: A wrapper around the Docker SDK with connection
# validation and detailed error reporting.
#
# This is part of the Infrastructure layer - it provides low-level Docker
# access to the Artifact Builder without exposing SDK complexity. The
# connection is opened lazily so planning a run never needs a daemon.
# -----------------------------------------------------------------------------

import docker
from docker import DockerClient
from docker.errors import DockerException
from rich.console import Console
from rich.panel import Panel

console = Console()


class DockerProviderError(Exception):
    """Raised when the Docker daemon cannot be reached."""

    pass


class DockerProvider:
    """
    Lazily connected Docker SDK client.

    Connects to base_url when given (e.g. a DOCKER_HOST proxy), otherwise
    to whatever docker.from_env() finds.
    """

    def __init__(self, base_url: str | None = None) -> None:
        """
        Initialize the Docker provider.

        Args:
            base_url: Docker daemon URL. None means use the environment.
        """
        self._base_url = base_url
        self._client: DockerClient | None = None

    def _connect(self) -> DockerClient:
        """
        Establish connection to Docker daemon.

        Raises:
            DockerProviderError: If the daemon does not answer a ping.
        """
        try:
            if self._base_url:
                client = docker.DockerClient(base_url=self._base_url)
                console.print(f"[green][DOCKER] Connected via {self._base_url}[/green]")
            else:
                client = docker.from_env()
                console.print("[green][DOCKER] Connected to local Docker Engine[/green]")
            client.ping()
            return client
        except DockerException as e:
            console.print(
                Panel(
                    "[bold red]Docker Engine Unavailable[/bold red]\n\n"
                    "Image builds need a running Docker daemon.\n"
                    "Check DOCKER_HOST or start the daemon and re-run.",
                    title="BUILD HALT",
                    border_style="red",
                )
            )
            raise DockerProviderError(f"Docker Engine is not available: {e}") from e

    def get_client(self) -> DockerClient:
        """
        Get the Docker client, verifying connection is still active.

        Returns:
            Active DockerClient instance.

        Raises:
            DockerProviderError: If Docker is unreachable.
        """
        if self._client is None:
            self._client = self._connect()
            return self._client

        try:
            self._client.ping()
            return self._client
        except DockerException as e:
            console.print(f"[yellow][DOCKER] Connection lost: {e}, reconnecting...[/yellow]")
            self._client = self._connect()
            return self._client

    def is_connected(self) -> bool:
        """
        Check if Docker is currently reachable.

        Returns:
            True if Docker is connected and responsive.
        """
        if self._client is None:
            return False
        try:
            self._client.ping()
            return True
        except DockerException:
            return False
