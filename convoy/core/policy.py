# -----------------------------------------------------------------------------
# THE GATEKEEPER - DEPLOYMENT POLICY
# -----------------------------------------------------------------------------
# Responsibility: Validate a run against policy before any remote call
# occurs. If a run violates policy, it is REJECTED before a single stack
# is submitted or image pushed.
#
# Rules:
# - Only known IAM capabilities may be acknowledged
# - Images may only be pushed to allowed repositories (github-actions-*)
# - Templates must exist (and live under template_root when set)
# - A run may not exceed max_stacks
# -----------------------------------------------------------------------------

from fnmatch import fnmatch
from pathlib import Path
from typing import List

import yaml
from pydantic import BaseModel
from rich.console import Console

from convoy.domain.models import RunConfig
from convoy.errors import PolicyViolation

console = Console()

# Policy file location
POLICY_PATH = Path("policy.yaml")


class PolicyConfig(BaseModel):
    """
    Pydantic model for the policy configuration.

    Loaded from policy.yaml at startup.
    """

    allowed_capabilities: List[str] = [
        "CAPABILITY_IAM",
        "CAPABILITY_NAMED_IAM",
        "CAPABILITY_AUTO_EXPAND",
    ]
    allowed_repositories: List[str] = ["github-actions-*"]
    max_stacks: int = 20
    template_root: str | None = None


class DeploymentPolicy:
    """
    The Gatekeeper that validates runs against policy.

    Nothing reaches the provisioning engine or the registry without passing
    every rule here.
    """

    def __init__(self, policy_path: Path = POLICY_PATH) -> None:
        """
        Initialize the policy.

        Args:
            policy_path: Path to the policy YAML file.
        """
        self._policy_path = policy_path
        self._config: PolicyConfig = self._load_policy()
        console.print(
            f"[green][GATEKEEPER] Policy loaded: {len(self._config.allowed_repositories)} "
            f"repository pattern(s)[/green]"
        )

    @property
    def config(self) -> PolicyConfig:
        return self._config

    def _load_policy(self) -> PolicyConfig:
        """
        Load policy from YAML file.

        Returns:
            PolicyConfig with validated settings.

        Raises:
            PolicyViolation: The file is not valid YAML or not a valid policy.
        """
        if not self._policy_path.exists():
            console.print("[yellow][GATEKEEPER] Policy file not found, using defaults[/yellow]")
            return PolicyConfig()

        try:
            with open(self._policy_path) as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ValueError("policy must be a mapping")
            return PolicyConfig(**data)
        except (yaml.YAMLError, ValueError) as e:
            console.print(f"[red][GATEKEEPER] Unreadable policy {self._policy_path}[/red]")
            raise PolicyViolation(
                f"Policy file {self._policy_path} is invalid: {e}",
                rule="policy_file",
                details=str(e),
            ) from e

    def validate(self, config: RunConfig) -> bool:
        """
        Validate a run against all policy rules.

        Args:
            config: The RunConfig to validate.

        Returns:
            True if validation passes.

        Raises:
            PolicyViolation: If any policy rule is violated.
        """
        console.print(f"[cyan][GATEKEEPER] Validating run: {config.environment}[/cyan]")

        self._check_stack_count(config)
        self._check_capabilities(config)
        self._check_repositories(config)
        self._check_templates(config)

        console.print(f"[green][GATEKEEPER] Access Granted: {config.environment}[/green]")
        return True

    def _check_stack_count(self, config: RunConfig) -> None:
        """Check the run stays under max_stacks."""
        if len(config.stacks) > self._config.max_stacks:
            console.print("[red][GATEKEEPER] Access Denied: Too many stacks[/red]")
            raise PolicyViolation(
                f"Access Denied: Too many stacks ({len(config.stacks)} > {self._config.max_stacks})",
                rule="max_stacks",
                details=f"Maximum allowed: {self._config.max_stacks}",
            )

    def _check_capabilities(self, config: RunConfig) -> None:
        """Check every acknowledged capability is allowed."""
        allowed = set(self._config.allowed_capabilities)
        for stack in config.stacks:
            for capability in stack.capabilities:
                if capability not in allowed:
                    console.print(
                        f"[red][GATEKEEPER] Access Denied: {capability} on {stack.name}[/red]"
                    )
                    raise PolicyViolation(
                        f"Access Denied: Capability '{capability}' is not allowed",
                        rule="allowed_capabilities",
                        details=f"Allowed: {sorted(allowed)}",
                        stack=stack.name,
                    )

    def _check_repositories(self, config: RunConfig) -> None:
        """Check images only go to allowed repositories."""
        for name, spec in config.builds.items():
            repository = spec.for_environment(config.environment).repository
            if not any(fnmatch(repository, pattern) for pattern in self._config.allowed_repositories):
                console.print(f"[red][GATEKEEPER] Access Denied: repository {repository}[/red]")
                raise PolicyViolation(
                    f"Access Denied: Build '{name}' pushes to disallowed repository '{repository}'",
                    rule="allowed_repositories",
                    details=f"Allowed: {self._config.allowed_repositories}",
                )

    def _check_templates(self, config: RunConfig) -> None:
        """Check every template exists, and sits under template_root if set."""
        root = Path(self._config.template_root).resolve() if self._config.template_root else None
        for stack in config.stacks:
            template = stack.template.resolve()
            if not template.is_file():
                raise PolicyViolation(
                    f"Template for stack '{stack.name}' not found: {stack.template}",
                    rule="template_exists",
                    details=str(stack.template),
                    stack=stack.name,
                )
            if root is not None and not template.is_relative_to(root):
                console.print(f"[red][GATEKEEPER] Access Denied: template {template}[/red]")
                raise PolicyViolation(
                    f"Access Denied: Template '{stack.template}' is outside {root}",
                    rule="template_root",
                    details=str(root),
                    stack=stack.name,
                )
