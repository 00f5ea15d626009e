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
# THE DRIVER - CONVERGENCE
# -----------------------------------------------------------------------------
# Responsibility: Drive one stack to match its template + parameters.
#
# State machine per stack:
#   PENDING -> SUBMITTED -> IN_PROGRESS -> SUCCEEDED | FAILED | ROLLED_BACK
#
# Rules:
# - No remote stack: create. Existing stack: update.
# - An update with nothing to change is SUCCEEDED, not an error.
# - FAILED / ROLLED_BACK raise ConvergenceError. No rollback-retry.
# - Exceeding max_wait raises ConvergenceTimeoutError: state unknown.
# - The Provisioner has no delete. Neither does the Driver.
# -----------------------------------------------------------------------------

import asyncio
from typing import Callable, Protocol

from rich.console import Console

from convoy.domain.models import StackDefinition, StackOutput, StackState
from convoy.errors import ConvergenceError, ConvergenceTimeoutError
from convoy.infra.cloudformation import ProvisionerError, RemoteStack

console = Console()

# Configuration
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_WAIT_SECONDS = 1800.0

TransitionCallback = Callable[[StackState, str], None]


class Provisioner(Protocol):
    """What the Driver may ask of the provisioning engine. Nothing deletes."""

    def describe(self, stack_name: str) -> RemoteStack | None:
        ...

    def create(
        self,
        stack_name: str,
        template_body: str,
        parameters: dict[str, str],
        capabilities: list[str],
        tags: dict[str, str] | None = None,
    ) -> str:
        ...

    def update(
        self,
        stack_name: str,
        template_body: str,
        parameters: dict[str, str],
        capabilities: list[str],
        tags: dict[str, str] | None = None,
    ) -> str | None:
        ...

    def failure_events(self, stack_name: str, limit: int = 5) -> list[str]:
        ...


class ConvergenceDriver:
    """
    Submits a stack and polls the provisioning engine until it settles.

    Polling uses asyncio.sleep, so waiting on one stack never blocks other
    runs sharing the event loop. Blocking provisioner calls run in worker
    threads.
    """

    def __init__(
        self,
        provisioner: Provisioner,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_wait: float = DEFAULT_MAX_WAIT_SECONDS,
    ) -> None:
        self._provisioner = provisioner
        self._poll_interval = poll_interval
        self._max_wait = max_wait

    async def converge(
        self,
        stack: StackDefinition,
        resolved_params: dict[str, str],
        remote_name: str | None = None,
        on_transition: TransitionCallback | None = None,
    ) -> StackOutput:
        """
        Create or update a stack and wait for a terminal state.

        Args:
            stack: The stack to converge.
            resolved_params: Parameter values, all references already resolved.
            remote_name: Name of the stack in the provisioning engine
                (defaults to stack.name).
            on_transition: Called with (state, detail) on every state change.

        Returns:
            StackOutput with the stack's outputs.

        Raises:
            ConvergenceError: Terminal failure, or a stack that cannot be updated.
            ConvergenceTimeoutError: max_wait exceeded, state indeterminate.
        """
        name = remote_name or stack.name

        def emit(state: StackState, detail: str = "") -> None:
            if on_transition:
                on_transition(state, detail)

        emit(StackState.PENDING)
        template_body = stack.template.read_text(encoding="utf-8")
        capabilities = list(stack.capabilities)
        tags = dict(stack.tags) or None

        started = asyncio.get_running_loop().time()
        remote = await self._call(stack.name, self._provisioner.describe, name)

        if remote is not None and remote.state is StackState.IN_PROGRESS:
            console.print(
                f"[yellow][DRIVER] {name} busy ({remote.status}), waiting before submit...[/yellow]"
            )
            remote = await self._poll(name, stack.name, started, emit=None, allow_missing=True)

        if remote is None:
            console.print(f"[cyan][DRIVER] Creating {name}...[/cyan]")
            await self._call(
                stack.name,
                self._provisioner.create, name, template_body, resolved_params, capabilities, tags
            )
            emit(StackState.SUBMITTED, "create")

        elif not remote.updatable:
            console.print(f"[red][DRIVER] {name} is {remote.status} and cannot be updated[/red]")
            raise ConvergenceError(
                f"Stack '{name}' is in {remote.status} and cannot be updated; "
                "it must be inspected and removed manually",
                stack=stack.name,
                status=remote.status,
                reason=remote.reason or "",
            )

        else:
            console.print(f"[cyan][DRIVER] Updating {name}...[/cyan]")
            stack_id = await self._call(
                stack.name,
                self._provisioner.update, name, template_body, resolved_params, capabilities, tags
            )
            if stack_id is None:
                console.print(f"[green][DRIVER] {name} already up to date[/green]")
                emit(StackState.SUCCEEDED, "no changes")
                return self._extract_outputs(stack, remote)
            emit(StackState.SUBMITTED, "update")

        final = await self._poll(name, stack.name, started, emit=emit)
        state = final.state

        if state is StackState.SUCCEEDED:
            console.print(f"[green][DRIVER] {name} converged ({final.status})[/green]")
            emit(StackState.SUCCEEDED, final.status)
            return self._extract_outputs(stack, final)

        events = await asyncio.to_thread(self._provisioner.failure_events, name)
        reason = "; ".join(part for part in [final.reason or ""] + events if part)
        console.print(f"[red][DRIVER] {name} ended {final.status}: {reason[:200]}[/red]")
        emit(state, final.status)
        raise ConvergenceError(
            f"Stack '{name}' ended in {final.status}",
            stack=stack.name,
            status=final.status,
            reason=reason,
        )

    async def _call(self, label: str, operation, *args):
        """Run a blocking provisioner call in a thread; rejections become ConvergenceError."""
        try:
            return await asyncio.to_thread(operation, *args)
        except ProvisionerError as e:
            raise ConvergenceError(
                f"Provisioning request for stack '{label}' failed: {e}",
                stack=label,
                status="REQUEST_FAILED",
                reason=str(e),
            ) from e

    async def _poll(
        self,
        name: str,
        label: str,
        started: float,
        emit: TransitionCallback | None,
        allow_missing: bool = False,
    ) -> RemoteStack | None:
        """
        Describe the stack until it leaves IN_PROGRESS or max_wait passes.

        Args:
            started: Loop time the converge began; max_wait counts from here
                across every wait of one converge.
            allow_missing: Return None if the stack disappears (a delete
                finishing before submit) instead of failing.
        """
        loop = asyncio.get_running_loop()
        last_status: str | None = None
        reported_progress = False

        while True:
            remote = await self._call(label, self._provisioner.describe, name)
            if remote is None:
                if allow_missing:
                    console.print(f"[dim][DRIVER] {name}: gone[/dim]")
                    return None
                raise ConvergenceError(
                    f"Stack '{name}' disappeared while converging",
                    stack=label,
                    status="DELETE_COMPLETE",
                )

            if remote.status != last_status:
                console.print(f"[dim][DRIVER] {name}: {remote.status}[/dim]")
                last_status = remote.status

            if remote.state is not StackState.IN_PROGRESS:
                return remote

            if emit and not reported_progress:
                emit(StackState.IN_PROGRESS, remote.status)
                reported_progress = True

            waited = loop.time() - started
            if waited >= self._max_wait:
                console.print(
                    f"[red][DRIVER] {name} still {remote.status} after {waited:.0f}s - giving up waiting[/red]"
                )
                raise ConvergenceTimeoutError(label, last_status, waited)

            await asyncio.sleep(min(self._poll_interval, self._max_wait - waited))

    def _extract_outputs(self, stack: StackDefinition, remote: RemoteStack) -> StackOutput:
        """Pick the declared outputs (or all of them) off a converged stack."""
        if not stack.outputs:
            return StackOutput(stack=stack.name, values=dict(remote.outputs))

        missing = [key for key in stack.outputs if key not in remote.outputs]
        if missing:
            raise ConvergenceError(
                f"Stack '{stack.name}' converged without declared outputs: {', '.join(missing)}",
                stack=stack.name,
                status=remote.status,
                reason=f"missing outputs: {', '.join(missing)}",
            )
        return StackOutput(
            stack=stack.name, values={key: remote.outputs[key] for key in stack.outputs}
        )
