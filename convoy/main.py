# -----------------------------------------------------------------------------
# CONVOY - COMMAND LINE INTERFACE
# -----------------------------------------------------------------------------
# Responsibility: The thin shell a CI job (or an operator) calls.
#
# Commands:
# - convoy plan <run.yml>:   Resolve + policy check, print the plan. No AWS.
# - convoy deploy <run.yml>: Full run (build, converge, verify).
#
# Exit codes:
#   0   run succeeded
#   1   a stack or build failed
#   2   a stack timed out (remote state indeterminate)
#   3   configuration, graph or policy error (nothing was touched)
#   130 cancelled
# -----------------------------------------------------------------------------

import asyncio
import sys
from pathlib import Path

import boto3
import click
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from convoy.config import ConfigError, Settings, load_run_config, load_settings
from convoy.core.builder import ArtifactBuilder
from convoy.core.driver import ConvergenceDriver
from convoy.core.healthcheck import HealthChecker
from convoy.core.orchestrator import Orchestrator, RunResult, plan_run
from convoy.core.policy import DeploymentPolicy
from convoy.domain.models import DeploymentPlan, LiteralValue, RunConfig, RunStatus, StackState
from convoy.errors import ConvoyError, GraphError, PolicyViolation
from convoy.infra.cloudformation import CloudFormationProvisioner
from convoy.infra.docker_client import DockerProvider
from convoy.infra.network import DefaultNetworkLookup
from convoy.infra.registry import EcrRegistryAuth
from convoy.infra.secrets import EnvSecretsProvider, SecretsManagerProvider

console = Console()

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_TIMED_OUT = 2
EXIT_CONFIG = 3
EXIT_CANCELLED = 130

STATE_STYLES = {
    StackState.SUCCEEDED: "green",
    StackState.FAILED: "red",
    StackState.ROLLED_BACK: "red",
    StackState.TIMED_OUT: "red",
    StackState.CANCELLED: "yellow",
    StackState.SKIPPED: "dim",
}


def exit_code(result: RunResult) -> int:
    """Map a RunResult onto the process exit code."""
    if result.status is RunStatus.SUCCEEDED:
        return EXIT_OK
    if result.status is RunStatus.TIMED_OUT:
        return EXIT_TIMED_OUT
    if result.status is RunStatus.CANCELLED:
        return EXIT_CANCELLED
    if isinstance(result.error, (GraphError, PolicyViolation)):
        return EXIT_CONFIG
    return EXIT_FAILED


def build_orchestrator(settings: Settings, secrets_source: str = "env") -> Orchestrator:
    """
    Wire one run's collaborators from explicit settings.

    A fresh boto3 session and secrets provider per run; nothing is shared
    between runs.
    """
    session = boto3.session.Session(region_name=settings.region)

    provisioner = CloudFormationProvisioner(
        session.client("cloudformation"), role_arn=settings.role_arn
    )
    driver = ConvergenceDriver(
        provisioner, poll_interval=settings.poll_interval, max_wait=settings.max_wait
    )
    builder = ArtifactBuilder(
        DockerProvider(base_url=settings.docker_host),
        auth=EcrRegistryAuth(session.client("ecr")),
    )

    if secrets_source == "aws":
        secrets = SecretsManagerProvider(session.client("secretsmanager"))
    else:
        secrets = EnvSecretsProvider()

    return Orchestrator(
        driver,
        builder=builder,
        policy=DeploymentPolicy(settings.policy_path),
        network=DefaultNetworkLookup(session.client("ec2")),
        secrets=secrets,
        health=HealthChecker(),
        runs_dir=settings.runs_dir,
    )


def render_plan(plan: DeploymentPlan, config: RunConfig) -> Tree:
    """The plan as a tree: stacks in order, with dependencies and parameters."""
    tree = Tree(f"[bold]Plan for {config.environment}[/bold] ({len(plan)} stack(s))")
    for index, stack in enumerate(plan, start=1):
        node = tree.add(f"[cyan]{index}. {stack.name}[/cyan] -> {config.remote_name(stack.name)}")
        if stack.dependencies():
            node.add(f"[dim]after: {', '.join(stack.dependencies())}[/dim]")
        for key, reference in stack.parameters.items():
            if isinstance(reference, LiteralValue):
                node.add(escape(f"{key} = {reference.render(config.environment)}"))
            else:
                node.add(f"{key} <- [magenta]{reference}[/magenta]")
    return tree


def render_result(result: RunResult) -> Table:
    """The run outcome as a table, one row per planned stack."""
    table = Table(title=f"Run {result.run_id} ({result.environment}): {result.status.value}")
    table.add_column("Stack")
    table.add_column("Remote")
    table.add_column("State")
    table.add_column("Time", justify="right")
    table.add_column("Detail")

    for record in result.records:
        style = STATE_STYLES.get(record.state, "cyan")
        if record.reason:
            detail = record.reason[:120]
        elif record.no_op:
            detail = "no changes"
        else:
            detail = ", ".join(f"{k}={v}" for k, v in record.outputs.items())[:120]
        if record.verified is not None:
            detail = f"{detail} ({'verified' if record.verified else 'health check failed'})".strip()
        table.add_row(
            record.name,
            record.remote_name,
            f"[{style}]{record.state.value}[/{style}]",
            f"{record.duration_seconds:.0f}s",
            escape(detail),
        )
    return table


@click.group()
def cli():
    """Ordered, fail-fast deployment of CloudFormation stacks and their images."""
    load_dotenv()


@cli.command()
@click.argument("run_file", type=click.Path(path_type=Path))
@click.option("--environment", "-e", default=None, help="Environment name (default: GITHUB_REPOSITORY)")
@click.option("--only", "only", multiple=True, help="Deploy only this stack and its dependencies")
def plan(run_file, environment, only):
    """Resolve and validate a run without touching AWS."""
    try:
        settings = load_settings()
        config = load_run_config(run_file, environment=environment)
        deployment_plan = plan_run(config, only, DeploymentPolicy(settings.policy_path))
    except (ConfigError, ConvoyError) as e:
        console.print(Panel(escape(str(e)), title="PLAN REJECTED", border_style="red"))
        sys.exit(EXIT_CONFIG)

    console.print(render_plan(deployment_plan, config))


@cli.command()
@click.argument("run_file", type=click.Path(path_type=Path))
@click.option("--environment", "-e", default=None, help="Environment name (default: GITHUB_REPOSITORY)")
@click.option("--revision", "-r", default=None, help="Commit sha used for image tags (default: GITHUB_SHA)")
@click.option("--only", "only", multiple=True, help="Deploy only this stack and its dependencies")
@click.option(
    "--secrets",
    "secrets_source",
    type=click.Choice(["env", "aws"]),
    default="env",
    help="Where SecretRef parameters are read from",
)
def deploy(run_file, environment, revision, only, secrets_source):
    """Build images and converge every stack in dependency order."""
    try:
        settings = load_settings()
        config = load_run_config(run_file, environment=environment, revision=revision)
    except ConfigError as e:
        console.print(Panel(escape(str(e)), title="CONFIG ERROR", border_style="red"))
        sys.exit(EXIT_CONFIG)

    try:
        orchestrator = build_orchestrator(settings, secrets_source)
    except ConvoyError as e:
        console.print(Panel(escape(str(e)), title="CONFIG ERROR", border_style="red"))
        sys.exit(EXIT_CONFIG)

    try:
        result = asyncio.run(orchestrator.run(config, only=only))
    except KeyboardInterrupt:
        console.print("[yellow][CONVOY] Interrupted[/yellow]")
        sys.exit(EXIT_CANCELLED)

    console.print(render_result(result))
    if result.error is not None:
        console.print(
            Panel(
                f"{escape(str(result.error))}\n\n[dim]stack: {result.error.stack}  phase: {result.error.phase}[/dim]",
                title=type(result.error).__name__,
                border_style="red",
            )
        )
    sys.exit(exit_code(result))


if __name__ == "__main__":
    cli()
