# -----------------------------------------------------------------------------
# CONFIGURATION
# -----------------------------------------------------------------------------
# Responsibility: Turn the process environment and a run file into the
# explicit objects a run is built from.
#
# - Settings: region, polling, role ARN, ledger folder, Docker host, policy.
#   Built once by the CLI and passed into components; never a global.
# - RunConfig: loaded from a YAML run file (yaml.safe_load) and validated
#   by the domain models. Template and build-context paths are relative to
#   the run file.
#
# Environment precedence: --environment > run file > GITHUB_REPOSITORY
# (with "/" replaced by "-", as the CI workflow names its stacks).
# -----------------------------------------------------------------------------

import os
import re
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import BaseModel, Field, ValidationError
from rich.console import Console

from convoy.core.driver import DEFAULT_MAX_WAIT_SECONDS, DEFAULT_POLL_INTERVAL_SECONDS
from convoy.core.ledger import RUNS_DIR
from convoy.core.policy import POLICY_PATH
from convoy.domain.models import RunConfig

console = Console()

DEFAULT_REGION = "us-east-2"


class ConfigError(Exception):
    """Raised when settings or a run file cannot be loaded."""

    pass


class Settings(BaseModel):
    """Process-level settings, read from the environment (and .env)."""

    region: str = DEFAULT_REGION
    poll_interval: float = Field(DEFAULT_POLL_INTERVAL_SECONDS, gt=0)
    max_wait: float = Field(DEFAULT_MAX_WAIT_SECONDS, gt=0)
    role_arn: str | None = None
    runs_dir: Path = RUNS_DIR
    docker_host: str | None = None
    policy_path: Path = POLICY_PATH

    class Config:
        frozen = True


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """
    Build Settings from environment variables.

    Args:
        environ: Variables to read. Defaults to os.environ.

    Raises:
        ConfigError: A variable holds an invalid value.
    """
    env = environ if environ is not None else os.environ

    values: dict[str, Any] = {
        "region": env.get("AWS_REGION") or env.get("AWS_DEFAULT_REGION") or DEFAULT_REGION,
        "role_arn": env.get("CONVOY_CFN_ROLE_ARN") or None,
        "docker_host": env.get("DOCKER_HOST") or None,
    }
    if env.get("CONVOY_POLL_INTERVAL"):
        values["poll_interval"] = env["CONVOY_POLL_INTERVAL"]
    if env.get("CONVOY_MAX_WAIT"):
        values["max_wait"] = env["CONVOY_MAX_WAIT"]
    if env.get("CONVOY_RUNS_DIR"):
        values["runs_dir"] = env["CONVOY_RUNS_DIR"]
    if env.get("CONVOY_POLICY"):
        values["policy_path"] = env["CONVOY_POLICY"]

    try:
        return Settings(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid settings: {e}") from e


def environment_from_repository(repository: str | None) -> str | None:
    """'octo-org/shop' -> 'octo-org-shop'."""
    if not repository:
        return None
    return re.sub(r"[^A-Za-z0-9-]", "-", repository.replace("/", "-"))


def _relative_to(base: Path, value: Any) -> Any:
    if value is None:
        return value
    path = Path(value).expanduser()
    return path if path.is_absolute() else base / path


def load_run_config(
    path: Path,
    environment: str | None = None,
    revision: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> RunConfig:
    """
    Load and validate a YAML run file.

    Args:
        path: The run file.
        environment: Overrides the file's environment.
        revision: Overrides the file's revision (commit sha).
        environ: Source of GITHUB_REPOSITORY / GITHUB_SHA fallbacks.

    Returns:
        A validated RunConfig.

    Raises:
        ConfigError: Missing file, bad YAML, or invalid content.
    """
    env = environ if environ is not None else os.environ
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Run file not found: {path}")

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Run file {path} is not valid YAML: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Run file {path} must contain a mapping")

    base = path.resolve().parent

    stacks = []
    for stack in data.get("stacks") or []:
        if isinstance(stack, dict) and "template" in stack:
            stack = {**stack, "template": _relative_to(base, stack["template"])}
        stacks.append(stack)
    data["stacks"] = stacks

    builds = {}
    for name, build in (data.get("builds") or {}).items():
        if isinstance(build, dict):
            build = {**build, "context": _relative_to(base, build.get("context", "."))}
        builds[name] = build
    data["builds"] = builds

    data["environment"] = (
        environment
        or data.get("environment")
        or environment_from_repository(env.get("GITHUB_REPOSITORY"))
    )
    if not data["environment"]:
        raise ConfigError(
            "No environment given: pass --environment, set 'environment' in the "
            "run file, or run with GITHUB_REPOSITORY set"
        )
    data["revision"] = revision or data.get("revision") or env.get("GITHUB_SHA") or None

    try:
        config = RunConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Run file {path} is invalid:\n{e}") from e

    console.print(
        f"[green][CONFIG] Loaded {path.name}: {len(config.stacks)} stack(s), "
        f"{len(config.builds)} build(s) for {config.environment}[/green]"
    )
    return config
