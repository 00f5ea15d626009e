# =============================================================================
# CONVOY CLOUDFORMATION PROVISIONER TESTS
# =============================================================================
# The boto3 adapter: status mapping, request shapes, "no updates", events.
# =============================================================================

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from convoy.domain.models import StackState
from convoy.infra.cloudformation import (
    CloudFormationProvisioner,
    ProvisionerError,
    classify_status,
)


def client_error(code, message, operation="UpdateStack"):
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


@pytest.fixture
def cfn():
    return MagicMock()


class TestStatusMapping:
    """CloudFormation statuses onto the driver's states."""

    @pytest.mark.parametrize(
        "status,state",
        [
            ("CREATE_COMPLETE", StackState.SUCCEEDED),
            ("UPDATE_COMPLETE", StackState.SUCCEEDED),
            ("ROLLBACK_COMPLETE", StackState.ROLLED_BACK),
            ("UPDATE_ROLLBACK_COMPLETE", StackState.ROLLED_BACK),
            ("CREATE_FAILED", StackState.FAILED),
            ("UPDATE_ROLLBACK_FAILED", StackState.FAILED),
            ("CREATE_IN_PROGRESS", StackState.IN_PROGRESS),
            ("UPDATE_COMPLETE_CLEANUP_IN_PROGRESS", StackState.IN_PROGRESS),
            ("REVIEW_IN_PROGRESS", StackState.PENDING),
        ],
    )
    def test_classify(self, status, state):
        assert classify_status(status) is state


class TestDescribe:
    """describe()"""

    def test_missing_stack(self, cfn):
        """'does not exist' means None."""
        cfn.describe_stacks.side_effect = client_error(
            "ValidationError", "Stack with id dev-infra does not exist", "DescribeStacks"
        )
        assert CloudFormationProvisioner(cfn).describe("dev-infra") is None

    def test_deleted_stack(self, cfn):
        """A DELETE_COMPLETE stack counts as missing."""
        cfn.describe_stacks.return_value = {
            "Stacks": [{"StackName": "dev-infra", "StackStatus": "DELETE_COMPLETE"}]
        }
        assert CloudFormationProvisioner(cfn).describe("dev-infra") is None

    def test_outputs_and_reason(self, cfn):
        """Outputs are flattened into a mapping."""
        cfn.describe_stacks.return_value = {
            "Stacks": [
                {
                    "StackName": "dev-infra",
                    "StackId": "arn:aws:cloudformation:stack/dev-infra/1",
                    "StackStatus": "UPDATE_ROLLBACK_COMPLETE",
                    "StackStatusReason": "Resource update cancelled",
                    "Outputs": [{"OutputKey": "ServiceURL", "OutputValue": "http://lb"}],
                }
            ]
        }

        remote = CloudFormationProvisioner(cfn).describe("dev-infra")

        assert remote.outputs == {"ServiceURL": "http://lb"}
        assert remote.reason == "Resource update cancelled"
        assert remote.state is StackState.ROLLED_BACK
        assert remote.updatable is True

    def test_other_errors_raise(self, cfn):
        """Access problems are not 'missing'."""
        cfn.describe_stacks.side_effect = client_error("AccessDenied", "not authorized", "DescribeStacks")
        with pytest.raises(ProvisionerError):
            CloudFormationProvisioner(cfn).describe("dev-infra")


class TestSubmit:
    """create() / update()"""

    def test_create_request(self, cfn):
        """Parameters, capabilities, tags and role are sent."""
        cfn.create_stack.return_value = {"StackId": "arn:1"}
        provisioner = CloudFormationProvisioner(cfn, role_arn="arn:aws:iam::1:role/github-actions-cloudformation-stack-role")

        stack_id = provisioner.create(
            "dev-infra", "Resources: {}", {"EnvironmentName": "dev"}, ["CAPABILITY_IAM"], {"team": "web"}
        )

        assert stack_id == "arn:1"
        cfn.create_stack.assert_called_once_with(
            StackName="dev-infra",
            TemplateBody="Resources: {}",
            Parameters=[{"ParameterKey": "EnvironmentName", "ParameterValue": "dev"}],
            Capabilities=["CAPABILITY_IAM"],
            Tags=[{"Key": "team", "Value": "web"}],
            RoleARN="arn:aws:iam::1:role/github-actions-cloudformation-stack-role",
        )

    def test_update_without_changes(self, cfn):
        """'No updates are to be performed' -> None."""
        cfn.update_stack.side_effect = client_error("ValidationError", "No updates are to be performed.")
        assert CloudFormationProvisioner(cfn).update("dev-infra", "{}", {}, []) is None

    def test_update_rejected(self, cfn):
        """Other validation errors raise ProvisionerError."""
        cfn.update_stack.side_effect = client_error("ValidationError", "Template format error")
        with pytest.raises(ProvisionerError) as exc_info:
            CloudFormationProvisioner(cfn).update("dev-infra", "{}", {}, [])
        assert exc_info.value.code == "ValidationError"

    def test_create_rejected(self, cfn):
        """create_stack errors raise ProvisionerError."""
        cfn.create_stack.side_effect = client_error("InsufficientCapabilitiesException", "Requires capabilities", "CreateStack")
        with pytest.raises(ProvisionerError):
            CloudFormationProvisioner(cfn).create("dev-infra", "{}", {}, [])


class TestFailureEvents:
    """failure_events()"""

    def test_oldest_failure_first(self, cfn):
        """Failed resource reasons are returned oldest first."""
        cfn.describe_stack_events.return_value = {
            "StackEvents": [
                {"LogicalResourceId": "dev-infra", "ResourceStatus": "ROLLBACK_COMPLETE"},
                {"LogicalResourceId": "Service", "ResourceStatus": "CREATE_FAILED", "ResourceStatusReason": "Resource creation cancelled"},
                {"LogicalResourceId": "Role", "ResourceStatus": "CREATE_FAILED", "ResourceStatusReason": "Access denied"},
                {"LogicalResourceId": "Role", "ResourceStatus": "CREATE_IN_PROGRESS"},
            ]
        }

        events = CloudFormationProvisioner(cfn).failure_events("dev-infra")

        assert events == ["Role: Access denied", "Service: Resource creation cancelled"]

    def test_earlier_operations_ignored(self, cfn):
        """Failures from previous deployments are not reported again."""
        cfn.describe_stack_events.return_value = {
            "StackEvents": [
                {"LogicalResourceId": "dev-infra", "ResourceStatus": "UPDATE_ROLLBACK_COMPLETE"},
                {"LogicalResourceId": "dev-infra", "ResourceStatus": "UPDATE_ROLLBACK_IN_PROGRESS", "ResourceStatusReason": "The following resource(s) failed to update: [Service]"},
                {"LogicalResourceId": "Service", "ResourceStatus": "UPDATE_FAILED", "ResourceStatusReason": "Image not found"},
                {"LogicalResourceId": "dev-infra", "ResourceStatus": "UPDATE_IN_PROGRESS"},
                {"LogicalResourceId": "dev-infra", "ResourceStatus": "CREATE_COMPLETE"},
                {"LogicalResourceId": "Role", "ResourceStatus": "CREATE_FAILED", "ResourceStatusReason": "Access denied"},
                {"LogicalResourceId": "dev-infra", "ResourceStatus": "CREATE_IN_PROGRESS"},
            ]
        }

        events = CloudFormationProvisioner(cfn).failure_events("dev-infra")

        assert events == ["Service: Image not found"]

    def test_unreadable_events(self, cfn):
        """Event lookups never mask the original failure."""
        cfn.describe_stack_events.side_effect = client_error("Throttling", "Rate exceeded", "DescribeStackEvents")
        assert CloudFormationProvisioner(cfn).failure_events("dev-infra") == []
