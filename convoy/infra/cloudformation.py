# -----------------------------------------------------------------------------
# CLOUDFORMATION PROVISIONER
# -----------------------------------------------------------------------------
# Responsibility: A thin boto3 wrapper that exposes exactly the operations
# the Convergence Driver is allowed to use: describe, create, update, and
# read failure events.
#
# There is NO delete operation here. Automation never tears down a stack,
# not even to recover from a failed create. A stack stuck in
# ROLLBACK_COMPLETE must be inspected and removed by a human.
# -----------------------------------------------------------------------------

from dataclasses import dataclass, field
from typing import Any

from botocore.exceptions import ClientError
from rich.console import Console

from convoy.domain.models import StackState

console = Console()

SUCCEEDED_STATUSES = {"CREATE_COMPLETE", "UPDATE_COMPLETE", "IMPORT_COMPLETE"}
ROLLED_BACK_STATUSES = {
    "ROLLBACK_COMPLETE",
    "UPDATE_ROLLBACK_COMPLETE",
    "IMPORT_ROLLBACK_COMPLETE",
}
FAILED_STATUSES = {
    "CREATE_FAILED",
    "ROLLBACK_FAILED",
    "UPDATE_FAILED",
    "UPDATE_ROLLBACK_FAILED",
    "IMPORT_ROLLBACK_FAILED",
    "DELETE_FAILED",
}

# Existing stacks in these states cannot take an update
NOT_UPDATABLE_STATUSES = {
    "CREATE_FAILED",
    "ROLLBACK_COMPLETE",
    "ROLLBACK_FAILED",
    "DELETE_FAILED",
    "UPDATE_ROLLBACK_FAILED",
    "REVIEW_IN_PROGRESS",
}

NO_UPDATES_MESSAGE = "No updates are to be performed"

# Stack-level events that open a new operation; older events belong to
# earlier deployments
OPERATION_START_STATUSES = {"CREATE_IN_PROGRESS", "UPDATE_IN_PROGRESS", "IMPORT_IN_PROGRESS"}


class ProvisionerError(Exception):
    """The provisioning engine rejected or failed a request."""

    def __init__(self, message: str, code: str = "") -> None:
        super().__init__(message)
        self.code = code


def _error_of(e: ClientError) -> tuple[str, str]:
    error = e.response.get("Error", {})
    return error.get("Code", ""), error.get("Message", str(e))


def classify_status(status: str) -> StackState:
    """Map a CloudFormation stack status onto the driver's state machine."""
    if status in SUCCEEDED_STATUSES:
        return StackState.SUCCEEDED
    if status in ROLLED_BACK_STATUSES:
        return StackState.ROLLED_BACK
    if status in FAILED_STATUSES:
        return StackState.FAILED
    if status == "REVIEW_IN_PROGRESS":
        return StackState.PENDING
    return StackState.IN_PROGRESS


@dataclass
class RemoteStack:
    """Snapshot of a stack as the provisioning engine reports it."""

    name: str
    stack_id: str
    status: str
    reason: str | None = None
    outputs: dict[str, str] = field(default_factory=dict)

    @property
    def state(self) -> StackState:
        return classify_status(self.status)

    @property
    def updatable(self) -> bool:
        return self.status not in NOT_UPDATABLE_STATUSES


class CloudFormationProvisioner:
    """
    Create/update/describe access to CloudFormation. Delete is not exposed.

    Args:
        client: A boto3 CloudFormation client.
        role_arn: Service role CloudFormation assumes for stack operations.
    """

    def __init__(self, client: Any, role_arn: str | None = None) -> None:
        self._client = client
        self._role_arn = role_arn

    def describe(self, stack_name: str) -> RemoteStack | None:
        """
        Fetch the current state of a stack.

        Returns:
            RemoteStack, or None if the stack does not exist (or was deleted).
        """
        try:
            response = self._client.describe_stacks(StackName=stack_name)
        except ClientError as e:
            code, message = _error_of(e)
            if "does not exist" in message:
                return None
            raise ProvisionerError(f"describe_stacks {stack_name} failed: {message}", code) from e

        stacks = response.get("Stacks", [])
        if not stacks:
            return None

        stack = stacks[0]
        if stack["StackStatus"] == "DELETE_COMPLETE":
            return None

        return RemoteStack(
            name=stack["StackName"],
            stack_id=stack.get("StackId", stack["StackName"]),
            status=stack["StackStatus"],
            reason=stack.get("StackStatusReason"),
            outputs={
                output["OutputKey"]: output.get("OutputValue", "")
                for output in stack.get("Outputs", [])
            },
        )

    def _request(
        self,
        stack_name: str,
        template_body: str,
        parameters: dict[str, str],
        capabilities: list[str],
        tags: dict[str, str] | None,
    ) -> dict[str, Any]:
        request: dict[str, Any] = {
            "StackName": stack_name,
            "TemplateBody": template_body,
            "Parameters": [
                {"ParameterKey": key, "ParameterValue": value}
                for key, value in parameters.items()
            ],
            "Capabilities": list(capabilities),
        }
        if tags:
            request["Tags"] = [{"Key": key, "Value": value} for key, value in tags.items()]
        if self._role_arn:
            request["RoleARN"] = self._role_arn
        return request

    def create(
        self,
        stack_name: str,
        template_body: str,
        parameters: dict[str, str],
        capabilities: list[str],
        tags: dict[str, str] | None = None,
    ) -> str:
        """Submit a new stack. Returns the stack id."""
        request = self._request(stack_name, template_body, parameters, capabilities, tags)
        console.print(f"[cyan][CFN] create_stack {stack_name}[/cyan]")
        try:
            response = self._client.create_stack(**request)
        except ClientError as e:
            code, message = _error_of(e)
            console.print(f"[red][CFN] create_stack {stack_name} rejected: {message}[/red]")
            raise ProvisionerError(message, code) from e
        return response["StackId"]

    def update(
        self,
        stack_name: str,
        template_body: str,
        parameters: dict[str, str],
        capabilities: list[str],
        tags: dict[str, str] | None = None,
    ) -> str | None:
        """
        Submit an update to an existing stack.

        Returns:
            The stack id, or None when the update would change nothing.
        """
        request = self._request(stack_name, template_body, parameters, capabilities, tags)
        console.print(f"[cyan][CFN] update_stack {stack_name}[/cyan]")
        try:
            response = self._client.update_stack(**request)
        except ClientError as e:
            code, message = _error_of(e)
            if NO_UPDATES_MESSAGE in message:
                console.print(f"[dim][CFN] {stack_name}: no changes[/dim]")
                return None
            console.print(f"[red][CFN] update_stack {stack_name} rejected: {message}[/red]")
            raise ProvisionerError(message, code) from e
        return response["StackId"]

    def failure_events(self, stack_name: str, limit: int = 5) -> list[str]:
        """
        Collect the resource failure reasons of the stack's latest operation.

        Scanning stops at the stack-level event that started that operation.

        Events come back newest first; the oldest failure is usually the root
        cause, so the result is returned oldest first.
        """
        try:
            response = self._client.describe_stack_events(StackName=stack_name)
        except ClientError as e:
            console.print(f"[yellow][CFN] Could not read events for {stack_name}: {e}[/yellow]")
            return []

        reasons = []
        for event in response.get("StackEvents", []):
            status = event.get("ResourceStatus", "")
            if event.get("LogicalResourceId") == stack_name and status in OPERATION_START_STATUSES:
                break
            if status.endswith("_FAILED") and event.get("ResourceStatusReason"):
                reasons.append(
                    f"{event.get('LogicalResourceId', '?')}: {event['ResourceStatusReason']}"
                )
            if len(reasons) >= limit:
                break
        return list(reversed(reasons))
