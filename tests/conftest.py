"""
Pytest configuration and fixtures for Convoy tests.
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from convoy.core.driver import ConvergenceDriver
from convoy.domain.models import ArtifactReference, BuildSpec, RunConfig, StackDefinition
from convoy.errors import BuildError
from convoy.infra.cloudformation import RemoteStack

TEMPLATE_BODY = "AWSTemplateFormatVersion: '2010-09-09'\nResources: {}\n"


class FakeProvisioner:
    """
    In-memory provisioning engine.

    After a create/update, each describe() reports the next scripted status;
    the last status sticks. Unscripted stacks complete on the first poll.
    Every call is recorded; there is no delete to record.
    `vanishing` removes a stack after that many describes, as if a delete
    started outside Convoy had just finished.
    """

    def __init__(self):
        self.stacks: dict[str, RemoteStack] = {}
        self.scripts: dict[str, list[str]] = {}
        self.outputs: dict[str, dict[str, str]] = {}
        self.events: dict[str, list[str]] = {}
        self.no_changes: set[str] = set()
        self.submitted: set[str] = set()
        self.vanishing: dict[str, int] = {}
        self.calls: list[tuple] = []

    def seed(self, name, status, outputs=None, reason=None):
        """Pretend a stack already exists remotely."""
        if outputs is not None:
            self.outputs[name] = dict(outputs)
        self.stacks[name] = RemoteStack(
            name=name,
            stack_id=f"arn:stack/{name}",
            status=status,
            reason=reason,
            outputs=dict(self.outputs.get(name, {})),
        )

    def script(self, name, *statuses, outputs=None, running=False):
        """Statuses the stack walks through once submitted (or already running)."""
        self.scripts[name] = list(statuses)
        if running:
            self.submitted.add(name)
        if outputs is not None:
            self.outputs[name] = dict(outputs)

    @property
    def mutations(self) -> list[tuple]:
        """create/update calls that actually changed something."""
        return [call for call in self.calls if call[0] in ("create", "update") and call[-1]]

    def describe(self, stack_name):
        self.calls.append(("describe", stack_name))
        if stack_name in self.vanishing:
            self.vanishing[stack_name] -= 1
            if self.vanishing[stack_name] <= 0:
                del self.vanishing[stack_name]
                self.stacks.pop(stack_name, None)
        stack = self.stacks.get(stack_name)
        if stack is None:
            return None
        queue = self.scripts.get(stack_name) if stack_name in self.submitted else None
        if queue:
            self.seed(stack_name, queue.pop(0) if len(queue) > 1 else queue[0])
        return self.stacks[stack_name]

    def create(self, stack_name, template_body, parameters, capabilities, tags=None):
        self.calls.append(("create", stack_name, dict(parameters), True))
        self.submitted.add(stack_name)
        self.scripts.setdefault(stack_name, ["CREATE_COMPLETE"])
        self.seed(stack_name, "CREATE_IN_PROGRESS")
        return f"arn:stack/{stack_name}"

    def update(self, stack_name, template_body, parameters, capabilities, tags=None):
        if stack_name in self.no_changes:
            self.calls.append(("update", stack_name, dict(parameters), False))
            return None
        self.calls.append(("update", stack_name, dict(parameters), True))
        self.submitted.add(stack_name)
        self.scripts.setdefault(stack_name, ["UPDATE_COMPLETE"])
        self.seed(stack_name, "UPDATE_IN_PROGRESS")
        return f"arn:stack/{stack_name}"

    def failure_events(self, stack_name, limit=5):
        return list(self.events.get(stack_name, []))[:limit]


class FakeBuilder:
    """Artifact builder that publishes to 'registry/<repository>' instantly."""

    def __init__(self, registry="registry", fail_with: BuildError | None = None):
        self.registry = registry
        self.fail_with = fail_with
        self.calls: list[tuple[BuildSpec, str]] = []

    def build(self, spec, tag):
        self.calls.append((spec, tag))
        if self.fail_with is not None:
            raise self.fail_with
        return ArtifactReference(registry=self.registry, repository=spec.repository, tag=tag)


@pytest.fixture
def provisioner():
    """A fresh in-memory provisioner."""
    return FakeProvisioner()


@pytest.fixture
def driver(provisioner):
    """A driver that polls without real delays."""
    return ConvergenceDriver(provisioner, poll_interval=0.001, max_wait=5)


@pytest.fixture
def template(tmp_path):
    """A minimal CloudFormation template on disk."""
    path = tmp_path / "template.yml"
    path.write_text(TEMPLATE_BODY)
    return path


@pytest.fixture
def make_stack(template):
    """Factory for StackDefinitions sharing one template file."""

    def _make(name, **kwargs):
        kwargs.setdefault("template", template)
        return StackDefinition(name=name, **kwargs)

    return _make


@pytest.fixture
def scenario_config(make_stack, tmp_path):
    """infra + webapp, webapp consuming the 'webapp' image and infra's outputs."""
    return RunConfig(
        environment="octo-shop",
        revision="abc123",
        stack_prefix=False,
        stacks=[
            make_stack(
                "webapp",
                depends_on=["infra"],
                parameters={
                    "ImageUrl": "ref:build:webapp",
                    "ClusterName": {"output": "infra.ClusterName"},
                    "ServiceName": "webapp",
                },
            ),
            make_stack(
                "infra",
                parameters={"EnvironmentName": "${environment}"},
                outputs=["ClusterName", "ServiceURL"],
            ),
        ],
        builds={
            "webapp": BuildSpec(
                context=tmp_path,
                repository="repo",
                tag_prefix="webapp",
                unique_tag=False,
            )
        },
    )


@pytest.fixture
def mock_docker_client():
    """Mock Docker client for testing."""
    client = MagicMock()
    client.ping.return_value = True
    client.images.build.return_value = (MagicMock(), [{"stream": "Step 1/1 : FROM scratch\n"}])
    client.images.push.return_value = iter(
        [
            {"status": "Pushing"},
            {"status": "latest", "aux": {"Tag": "t", "Digest": "sha256:abc", "Size": 1}},
        ]
    )
    return client


@pytest.fixture
def fake_builder():
    """An artifact builder that never touches Docker."""
    return FakeBuilder()
