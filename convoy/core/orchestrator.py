# Copyright 2026 Pramod Kumar Voola
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

# -----------------------------------------------------------------------------
# THE ORCHESTRATOR - RUN PIPELINE
# -----------------------------------------------------------------------------
# Orchestrates one deployment run end to end.
#
# Pipeline: Resolve -> Policy -> (Build) -> Resolve params -> Converge -> Verify
#
# Rules:
# - Stacks converge strictly in plan order, one at a time.
# - Image builds start up front in worker threads and overlap earlier,
#   unrelated stacks; a consuming stack waits for its build.
# - The first failure, timeout or cancellation halts the run. Remaining
#   stacks are SKIPPED. Converged stacks stay as they are: nothing is
#   rolled back, nothing is deleted.
# - Every run returns a RunResult and leaves a ledger folder behind.
# -----------------------------------------------------------------------------

import asyncio
import traceback
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Sequence

from rich.console import Console

from convoy.core.builder import ArtifactBuilder, make_image_tag
from convoy.core.driver import ConvergenceDriver
from convoy.core.healthcheck import HealthChecker
from convoy.core.ledger import RUNS_DIR, RunLedger
from convoy.core.policy import DeploymentPolicy
from convoy.core.resolver import resolve
from convoy.domain.models import (
    ArtifactRef,
    ArtifactReference,
    DeploymentPlan,
    LiteralValue,
    NetworkRef,
    OutputRef,
    RunConfig,
    RunStatus,
    SecretRef,
    StackDefinition,
    StackOutput,
    StackState,
)
from convoy.errors import (
    ConvergenceError,
    ConvergenceTimeoutError,
    ConvoyError,
    GraphError,
    UnresolvedReferenceError,
)
from convoy.infra.network import DefaultNetworkLookup
from convoy.infra.secrets import SecretNotFoundError, SecretsProvider

console = Console()

MASK = "****"


def plan_run(
    config: RunConfig,
    only: Sequence[str] | None = None,
    policy: DeploymentPolicy | None = None,
) -> DeploymentPlan:
    """
    Resolve a run's stacks into a plan and check it against policy.

    Args:
        config: The run.
        only: Keep just these stacks and their dependencies.
        policy: Gatekeeper to consult, if any.

    Raises:
        GraphError: Unknown dependency, cycle, or unknown target.
        PolicyViolation: The run breaks deployment policy.
    """
    plan = resolve(config.stacks)
    if only:
        try:
            plan = plan.subset(list(only))
        except KeyError as e:
            raise GraphError(f"Unknown target stack '{e.args[0]}'", stack=e.args[0]) from e
        console.print(f"[cyan][ORCHESTRATOR] Targeting: {' -> '.join(plan.names)}[/cyan]")

    if policy is not None:
        policy.validate(config)
    return plan


@dataclass
class StackRecord:
    """What happened to one stack during a run."""

    name: str
    remote_name: str
    state: StackState = StackState.PENDING
    phase: str | None = None
    reason: str | None = None
    parameters: dict[str, str] = field(default_factory=dict)
    outputs: dict[str, str] = field(default_factory=dict)
    artifacts: list[str] = field(default_factory=list)
    no_op: bool = False
    verified: bool | None = None
    duration_seconds: float = 0.0


@dataclass
class RunResult:
    """Outcome of a run: ordered stack records, outputs, first fatal error."""

    run_id: str
    environment: str
    status: RunStatus = RunStatus.SUCCEEDED
    plan: list[str] = field(default_factory=list)
    records: list[StackRecord] = field(default_factory=list)
    outputs: dict[str, StackOutput] = field(default_factory=dict)
    artifacts: dict[str, ArtifactReference] = field(default_factory=dict)
    error: ConvoyError | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    def record(self, name: str) -> StackRecord | None:
        for record in self.records:
            if record.name == name:
                return record
        return None

    def to_dict(self) -> dict[str, Any]:
        error = None
        if self.error is not None:
            error = {
                "type": type(self.error).__name__,
                "stack": self.error.stack,
                "phase": self.error.phase,
                "reason": self.error.reason,
                "message": str(self.error),
            }
        return {
            "run_id": self.run_id,
            "environment": self.environment,
            "status": self.status.value,
            "plan": self.plan,
            "records": [
                {**asdict(record), "state": record.state.value} for record in self.records
            ],
            "outputs": {name: dict(output.values) for name, output in self.outputs.items()},
            "artifacts": {name: artifact.uri for name, artifact in self.artifacts.items()},
            "error": error,
        }


class Orchestrator:
    """
    Sequences Resolver -> Builder -> Driver for one run at a time.

    An Orchestrator holds no per-run state; everything a run accumulates
    lives on its RunResult, so independent runs (e.g. two environments) can
    be awaited concurrently. Build one per run when the secrets provider
    must not outlive the run.
    """

    def __init__(
        self,
        driver: ConvergenceDriver,
        builder: ArtifactBuilder | None = None,
        policy: DeploymentPolicy | None = None,
        network: DefaultNetworkLookup | None = None,
        secrets: SecretsProvider | None = None,
        health: HealthChecker | None = None,
        runs_dir: Path | None = RUNS_DIR,
        overlap_builds: bool = True,
    ) -> None:
        self._driver = driver
        self._builder = builder
        self._policy = policy
        self._network = network
        self._secrets = secrets
        self._health = health
        self._runs_dir = runs_dir
        self._overlap_builds = overlap_builds

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def plan(self, config: RunConfig, only: Sequence[str] | None = None) -> DeploymentPlan:
        """
        Resolve and validate the run's plan without touching anything remote.

        Raises:
            GraphError: Unknown dependency, cycle, or unknown target.
            PolicyViolation: The run breaks deployment policy.
            ConvoyError: The plan needs builds but no builder is configured.
        """
        plan = plan_run(config, only, self._policy)
        if self._builder is None:
            for stack in plan:
                if stack.builds():
                    raise ConvoyError(
                        f"Stack '{stack.name}' needs image builds but no artifact builder is configured",
                        stack=stack.name,
                    )
        return plan

    async def run(
        self,
        config: RunConfig,
        only: Sequence[str] | None = None,
        run_id: str | None = None,
    ) -> RunResult:
        """
        Execute a complete deployment run.

        Args:
            config: Environment, stacks and builds.
            only: Deploy only these stacks (plus their dependencies).
            run_id: Identifier for the ledger folder; generated if omitted.

        Returns:
            RunResult. Errors are reported on the result, never raised.
        """
        run_id = run_id or uuid.uuid4().hex[:12]
        result = RunResult(run_id=run_id, environment=config.environment)
        ledger: RunLedger | None = None
        builds: dict[str, asyncio.Task] = {}
        current: StackRecord | None = None

        def log(event: str, stack: str | None = None, details: str | None = None) -> None:
            if ledger:
                ledger.log(event, stack, details)

        console.print(f"[cyan][Run {run_id[:8]}] Deploying environment {config.environment}[/cyan]")

        try:
            if self._runs_dir is not None:
                ledger = RunLedger(run_id, self._runs_dir)
            log("RUN_STARTED", details=config.environment)

            plan = self.plan(config, only)
            result.plan = plan.names
            result.records = [
                StackRecord(name=stack.name, remote_name=config.remote_name(stack.name))
                for stack in plan
            ]
            if ledger:
                ledger.save_plan(plan, config)

            if self._overlap_builds:
                for stack in plan:
                    for build in stack.builds():
                        self._artifact_task(build, config, run_id, builds, log)

            for stack, record in zip(plan, result.records):
                current = record
                await self._deploy_stack(stack, record, config, run_id, result, builds, log)
            current = None

            result.status = RunStatus.SUCCEEDED
            console.print(f"[green][Run {run_id[:8]}] SUCCEEDED[/green]")

        except ConvergenceTimeoutError as e:
            self._halt(result, current, e, RunStatus.TIMED_OUT, StackState.TIMED_OUT)
            console.print(
                f"[red][Run {run_id[:8]}] TIMED OUT on {e.stack} - remote state is "
                f"indeterminate, inspect it manually before re-running[/red]"
            )

        except ConvoyError as e:
            self._halt(result, current, e, RunStatus.FAILED, StackState.FAILED)
            console.print(f"[red][Run {run_id[:8]}] FAILED ({e.phase}): {e}[/red]")

        except asyncio.CancelledError:
            error = ConvoyError(
                "Run cancelled; in-progress stack left as-is",
                stack=current.name if current else None,
                reason="cancelled",
            )
            self._halt(result, current, error, RunStatus.CANCELLED, StackState.CANCELLED)
            console.print(f"[yellow][Run {run_id[:8]}] CANCELLED[/yellow]")

        except Exception as e:
            console.print(f"[red][Run {run_id[:8]}] Critical error: {e}[/red]")
            console.print(f"[dim]{traceback.format_exc()}[/dim]")
            error = ConvoyError(
                f"Unexpected error: {e}",
                stack=current.name if current else None,
                reason=type(e).__name__,
            )
            error.__cause__ = e
            self._halt(result, current, error, RunStatus.FAILED, StackState.FAILED)

        await self._drain_builds(builds)

        log("RUN_FINISHED", details=result.status.value)
        if ledger:
            ledger.save_result(result.to_dict())
            ledger.finalize()
        return result

    # =========================================================================
    # PER-STACK PIPELINE
    # =========================================================================

    async def _deploy_stack(
        self,
        stack: StackDefinition,
        record: StackRecord,
        config: RunConfig,
        run_id: str,
        result: RunResult,
        builds: dict[str, asyncio.Task],
        log,
    ) -> None:
        """Build -> resolve parameters -> converge -> verify, for one stack."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        console.print(f"[cyan][Run {run_id[:8]}] Stack {stack.name} -> {record.remote_name}[/cyan]")

        for build in stack.builds():
            record.phase = "build"
            task = self._artifact_task(build, config, run_id, builds, log)
            artifact = await task
            result.artifacts[build] = artifact
            record.artifacts.append(artifact.uri)

        record.phase = "resolve"
        parameters, masked = await self._resolve_parameters(stack, config, result)
        record.parameters = masked

        record.phase = "converge"

        def on_transition(state: StackState, detail: str) -> None:
            record.state = state
            if detail == "no changes":
                record.no_op = True
            log(state.value, stack.name, detail or None)

        try:
            output = await self._driver.converge(
                stack,
                parameters,
                remote_name=record.remote_name,
                on_transition=on_transition,
            )
        except ConvergenceError:
            if record.state not in (StackState.FAILED, StackState.ROLLED_BACK):
                record.state = StackState.FAILED
            raise
        finally:
            record.duration_seconds = loop.time() - started

        result.outputs[stack.name] = output
        record.outputs = dict(output.values)
        record.state = StackState.SUCCEEDED

        if stack.healthcheck is not None and self._health is not None:
            record.phase = "verify"
            record.verified = await asyncio.to_thread(self._health.verify, stack.healthcheck, output)
            log("VERIFIED" if record.verified else "VERIFY_FAILED", stack.name)

        record.phase = None
        record.duration_seconds = loop.time() - started

    def _artifact_task(
        self,
        build: str,
        config: RunConfig,
        run_id: str,
        builds: dict[str, asyncio.Task],
        log,
    ) -> asyncio.Task:
        """Return the (single) task building `build`, starting it if needed."""
        if build not in builds:
            spec = config.builds[build].for_environment(config.environment)
            builder = self._builder

            def _build() -> ArtifactReference:
                tag = make_image_tag(
                    spec.tag_prefix or build,
                    revision=config.revision,
                    context=spec.context,
                    nonce=run_id[:6] if spec.unique_tag else None,
                )
                return builder.build(spec, tag)

            log("BUILD_STARTED", details=build)
            builds[build] = asyncio.create_task(asyncio.to_thread(_build))
        return builds[build]

    async def _drain_builds(self, builds: dict[str, asyncio.Task]) -> None:
        """Stop waiting on builds nobody will consume. Threads finish on their own."""
        pending = [task for task in builds.values() if not task.done()]
        for task in pending:
            task.cancel()
        if builds:
            await asyncio.gather(*builds.values(), return_exceptions=True)

    async def _resolve_parameters(
        self, stack: StackDefinition, config: RunConfig, result: RunResult
    ) -> tuple[dict[str, str], dict[str, str]]:
        """
        Resolve every parameter reference of a stack.

        Returns:
            (values to submit, values safe to record with secrets masked)

        Raises:
            UnresolvedReferenceError: A referenced value is not available.
        """
        values: dict[str, str] = {}
        masked: dict[str, str] = {}

        for key, reference in stack.parameters.items():
            if isinstance(reference, LiteralValue):
                value = reference.render(config.environment)

            elif isinstance(reference, OutputRef):
                output = result.outputs.get(reference.stack)
                if output is None or reference.key not in output:
                    raise UnresolvedReferenceError(
                        f"Internal error: '{stack.name}.{key}' references {reference} "
                        "which has not been produced",
                        stack=stack.name,
                        reason=str(reference),
                    )
                value = output.values[reference.key]

            elif isinstance(reference, ArtifactRef):
                artifact = result.artifacts.get(reference.build)
                if artifact is None:
                    raise UnresolvedReferenceError(
                        f"Internal error: '{stack.name}.{key}' references unbuilt {reference}",
                        stack=stack.name,
                        reason=str(reference),
                    )
                value = artifact.uri

            elif isinstance(reference, NetworkRef):
                if self._network is None:
                    raise UnresolvedReferenceError(
                        f"'{stack.name}.{key}' needs {reference} but no network lookup is configured",
                        stack=stack.name,
                        reason=str(reference),
                    )
                value = await asyncio.to_thread(self._network.lookup, reference.attribute)

            elif isinstance(reference, SecretRef):
                if self._secrets is None:
                    raise UnresolvedReferenceError(
                        f"'{stack.name}.{key}' needs {reference} but no secrets provider is configured",
                        stack=stack.name,
                        reason=str(reference),
                    )
                try:
                    value = await asyncio.to_thread(self._secrets.get, reference.key)
                except SecretNotFoundError as e:
                    raise UnresolvedReferenceError(
                        str(e), stack=stack.name, reason=str(reference)
                    ) from e

            else:
                raise UnresolvedReferenceError(
                    f"Unsupported parameter reference {reference!r}", stack=stack.name
                )

            values[key] = value
            masked[key] = MASK if isinstance(reference, SecretRef) else value

        return values, masked

    # =========================================================================
    # HALTING
    # =========================================================================

    def _halt(
        self,
        result: RunResult,
        current: StackRecord | None,
        error: ConvoyError,
        status: RunStatus,
        state: StackState,
    ) -> None:
        """Record the first fatal error and mark everything after it SKIPPED."""
        result.status = status
        result.error = error

        if current is not None:
            error.stack = current.name
            if state is not StackState.FAILED or current.state not in (
                StackState.FAILED,
                StackState.ROLLED_BACK,
            ):
                current.state = state
            current.phase = current.phase or error.phase
            current.reason = error.reason or str(error)

        for record in result.records:
            if record is not current and record.state is StackState.PENDING:
                record.state = StackState.SKIPPED
