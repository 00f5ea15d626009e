# -----------------------------------------------------------------------------
# THE BUILDER - ARTIFACTS
# -----------------------------------------------------------------------------
# Responsibility: Build a container image from a build context and publish
# it to the registry, returning the registry address + tag.
#
# Safety Features:
# - Tags are derived from the commit (or the context's content hash) and
#   never reuse "latest"; retries get a fresh tag via the run nonce.
# - A failed push removes the local tag so nothing half-published stays
#   referenced.
# - Build/push diagnostics are captured into BuildError for the run report.
# -----------------------------------------------------------------------------

import hashlib
import re
from pathlib import Path

from docker.errors import APIError, ImageNotFound
from docker.errors import BuildError as DockerBuildError
from rich.console import Console

from convoy.domain.models import ArtifactReference, BuildSpec
from convoy.errors import BuildError
from convoy.infra.docker_client import DockerProvider, DockerProviderError
from convoy.infra.registry import RegistryAuth, RegistryAuthError

console = Console()

# Docker tag grammar: [A-Za-z0-9_][A-Za-z0-9_.-]{0,127}
MAX_TAG_LENGTH = 128
IGNORED_CONTEXT_PARTS = {".git", "__pycache__", ".venv", "node_modules"}


def context_digest(context: Path) -> str:
    """Short sha256 over every file path and byte in a build context."""
    digest = hashlib.sha256()
    files = sorted(
        path
        for path in context.rglob("*")
        if path.is_file() and not IGNORED_CONTEXT_PARTS.intersection(path.relative_to(context).parts)
    )
    for path in files:
        digest.update(path.relative_to(context).as_posix().encode("utf-8"))
        digest.update(b"\0")
        digest.update(path.read_bytes())
    return digest.hexdigest()[:12]


def make_image_tag(
    prefix: str,
    revision: str | None = None,
    context: Path | None = None,
    nonce: str | None = None,
) -> str:
    """
    Build a collision-free image tag.

    Args:
        prefix: Usually the build name (e.g. "webapp").
        revision: Commit sha; preferred suffix when known.
        context: Build context, hashed when no revision is given.
        nonce: Per-invocation suffix so concurrent runs never share a tag.

    Returns:
        A valid Docker tag such as "webapp-3f2a9c1e" or "webapp-3f2a9c1e-r7k2".
    """
    if revision:
        suffix = revision
    elif context is not None:
        suffix = context_digest(context)
    else:
        raise ValueError("A revision or a build context is required to derive a tag")

    tag = f"{prefix}-{suffix}"
    if nonce:
        tag = f"{tag}-{nonce}"
    tag = re.sub(r"[^A-Za-z0-9_.-]", "-", tag)
    return tag[:MAX_TAG_LENGTH]


def _collect(chunk: dict, lines: list[str]) -> None:
    """Append the human-readable part of a Docker JSON log chunk."""
    if "stream" in chunk:
        text = chunk["stream"].rstrip()
        if text:
            lines.append(text)
    elif "status" in chunk:
        lines.append(f"{chunk['status']} {chunk.get('progress', '')}".rstrip())
    if "error" in chunk:
        lines.append(chunk["error"].rstrip())


def _error_code(chunks) -> int:
    for chunk in chunks:
        detail = chunk.get("errorDetail") if isinstance(chunk, dict) else None
        if detail and detail.get("code"):
            return int(detail["code"])
    return 1


class ArtifactBuilder:
    """
    Builds and pushes images through the Docker Engine.

    The registry address comes from the RegistryAuth when one is given
    (ECR login), otherwise from `registry`.
    """

    def __init__(
        self,
        docker: DockerProvider,
        auth: RegistryAuth | None = None,
        registry: str | None = None,
    ) -> None:
        self._docker = docker
        self._auth = auth
        self._registry = registry or ""

    def build(self, spec: BuildSpec, tag: str) -> ArtifactReference:
        """
        Build spec.context as <registry>/<repository>:<tag> and push it.

        Args:
            spec: Build instructions (repository already environment-expanded).
            tag: Unique image tag.

        Returns:
            ArtifactReference of the pushed image, with digest when reported.

        Raises:
            BuildError: Docker unavailable, build failed, or push failed.
        """
        try:
            client = self._docker.get_client()
        except DockerProviderError as e:
            raise BuildError(str(e), exit_status=1, output=str(e)) from e

        try:
            credentials = self._auth.credentials() if self._auth else None
        except RegistryAuthError as e:
            raise BuildError(str(e), exit_status=1, output=str(e)) from e
        registry = credentials.registry if credentials else self._registry
        repository_uri = f"{registry}/{spec.repository}" if registry else spec.repository
        image_ref = f"{repository_uri}:{tag}"

        console.print(f"[cyan][BUILDER] Building {image_ref} from {spec.context}...[/cyan]")
        log_lines: list[str] = []

        try:
            _, logs = client.images.build(
                path=str(spec.context),
                dockerfile=spec.dockerfile,
                tag=image_ref,
                buildargs=dict(spec.build_args) or None,
                rm=True,
                forcerm=True,
            )
            for chunk in logs:
                _collect(chunk, log_lines)
        except DockerBuildError as e:
            chunks = list(e.build_log or [])
            for chunk in chunks:
                _collect(chunk, log_lines)
            output = "\n".join(log_lines) or str(e)
            console.print(f"[red][BUILDER] Build FAILED: {str(e)[:200]}[/red]")
            raise BuildError(
                f"Image build failed for {image_ref}: {e}",
                exit_status=_error_code(chunks),
                output=output,
            ) from e
        except APIError as e:
            console.print(f"[red][BUILDER] Docker API error: {e}[/red]")
            raise BuildError(
                f"Image build failed for {image_ref}: {e}",
                exit_status=e.status_code or 1,
                output="\n".join(log_lines) or str(e),
            ) from e

        console.print(f"[green][BUILDER] Built {image_ref}[/green]")
        digest = self._push(client, repository_uri, tag, credentials, log_lines)

        console.print(f"[green][BUILDER] Published {image_ref}[/green]")
        return ArtifactReference(
            registry=registry, repository=spec.repository, tag=tag, digest=digest
        )

    def _push(self, client, repository_uri: str, tag: str, credentials, log_lines: list[str]) -> str | None:
        """Push one tag; returns the registry digest if the daemon reported it."""
        image_ref = f"{repository_uri}:{tag}"
        console.print(f"[cyan][BUILDER] Pushing {image_ref}...[/cyan]")

        digest = None
        errors: list[dict] = []
        try:
            for chunk in client.images.push(
                repository_uri,
                tag=tag,
                stream=True,
                decode=True,
                auth_config=credentials.auth_config() if credentials else None,
            ):
                _collect(chunk, log_lines)
                if "error" in chunk:
                    errors.append(chunk)
                aux = chunk.get("aux") or {}
                if aux.get("Digest"):
                    digest = aux["Digest"]
        except APIError as e:
            self._discard(client, image_ref)
            raise BuildError(
                f"Push failed for {image_ref}: {e}",
                exit_status=e.status_code or 1,
                output="\n".join(log_lines) or str(e),
            ) from e

        if errors:
            console.print(f"[red][BUILDER] Push FAILED: {errors[0]['error'][:200]}[/red]")
            self._discard(client, image_ref)
            raise BuildError(
                f"Push failed for {image_ref}: {errors[0]['error']}",
                exit_status=_error_code(errors),
                output="\n".join(log_lines),
            )
        return digest

    def _discard(self, client, image_ref: str) -> None:
        """Drop the local tag of an image that never made it to the registry."""
        try:
            client.images.remove(image=image_ref, noprune=True)
            console.print(f"[yellow][BUILDER] Removed local tag {image_ref}[/yellow]")
        except (ImageNotFound, APIError) as e:
            console.print(f"[yellow][BUILDER] Could not remove {image_ref}: {e}[/yellow]")
