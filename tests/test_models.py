"""
Tests for the domain models: parameter references, stacks, plans and runs.
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from convoy.domain.models import (
    ArtifactRef,
    ArtifactReference,
    BuildSpec,
    DeploymentPlan,
    LiteralValue,
    NetworkRef,
    OutputRef,
    RunConfig,
    SecretRef,
    StackDefinition,
    StackOutput,
    StackState,
    parse_parameter,
    ref,
)


class TestReferences:
    """Parsing the accepted parameter forms."""

    def test_scalar_is_literal(self):
        """Plain values become literals."""
        assert parse_parameter("webapp") == LiteralValue(value="webapp")
        assert parse_parameter(8080) == LiteralValue(value=8080)

    def test_mapping_forms(self):
        """Single-key mappings select the reference type."""
        assert parse_parameter({"output": "infra.VpcId"}) == OutputRef(stack="infra", key="VpcId")
        assert parse_parameter({"build": "webapp"}) == ArtifactRef(build="webapp")
        assert parse_parameter({"network": "subnet_two"}) == NetworkRef(attribute="subnet_two")
        assert parse_parameter({"secret": "db:Password"}) == SecretRef(key="db:Password")

    def test_ref_string_shorthand(self):
        """'ref:' strings use the short textual form."""
        assert parse_parameter("ref:build:webapp") == ArtifactRef(build="webapp")
        assert parse_parameter("ref:infra.ServiceURL") == OutputRef(stack="infra", key="ServiceURL")
        assert ref("output:infra.Cluster") == OutputRef(stack="infra", key="Cluster")

    def test_bad_references_rejected(self):
        """Malformed references fail loudly."""
        with pytest.raises(ValueError):
            ref("infra")
        with pytest.raises(ValueError):
            ref("bucket:name")
        with pytest.raises(ValueError):
            parse_parameter({"output": "a.b", "build": "c"})
        with pytest.raises(ValueError):
            parse_parameter(None)

    def test_unknown_network_attribute(self):
        """Only vpc_id / subnet_one / subnet_two exist."""
        with pytest.raises(ValidationError):
            NetworkRef(attribute="subnet_three")

    def test_literal_rendering(self):
        """Literals render as the strings CloudFormation expects."""
        assert LiteralValue(value=True).render("dev") == "true"
        assert LiteralValue(value=3).render("dev") == "3"
        assert LiteralValue(value="${environment}-bucket").render("octo-shop") == "octo-shop-bucket"


class TestStackDefinition:
    """StackDefinition validation and derived edges."""

    def test_parameters_are_parsed(self):
        """Raw YAML parameters become typed references."""
        stack = StackDefinition(
            name="webapp",
            template=Path("service.yml"),
            parameters={"ImageUrl": "ref:build:webapp", "ServiceName": "webapp"},
        )
        assert isinstance(stack.parameters["ImageUrl"], ArtifactRef)
        assert isinstance(stack.parameters["ServiceName"], LiteralValue)
        assert list(stack.parameters) == ["ImageUrl", "ServiceName"]

    def test_invalid_name_rejected(self):
        """Names must be usable in a CloudFormation stack name."""
        with pytest.raises(ValidationError):
            StackDefinition(name="web_app", template=Path("t.yml"))
        with pytest.raises(ValidationError):
            StackDefinition(name="1web", template=Path("t.yml"))

    def test_dependencies_include_output_refs(self):
        """Output references add implicit, de-duplicated dependencies."""
        stack = StackDefinition(
            name="webapp",
            template=Path("t.yml"),
            depends_on=["infra"],
            parameters={
                "Cluster": {"output": "infra.Cluster"},
                "Queue": {"output": "queue.Url"},
            },
        )
        assert stack.dependencies() == ["infra", "queue"]

    def test_builds(self):
        """builds() lists each consumed build once."""
        stack = StackDefinition(
            name="webapp",
            template=Path("t.yml"),
            parameters={"A": {"build": "web"}, "B": "ref:build:web", "C": {"build": "worker"}},
        )
        assert stack.builds() == ["web", "worker"]

    def test_immutable(self):
        """Definitions cannot change after loading."""
        stack = StackDefinition(name="infra", template=Path("t.yml"))
        with pytest.raises(ValidationError):
            stack.name = "other"

    def test_default_capabilities(self):
        """IAM capabilities are acknowledged by default."""
        stack = StackDefinition(name="infra", template=Path("t.yml"))
        assert stack.capabilities == ("CAPABILITY_IAM", "CAPABILITY_NAMED_IAM")


class TestPlanAndOutputs:
    """DeploymentPlan and StackOutput helpers."""

    def _plan(self):
        return DeploymentPlan(
            stacks=(
                StackDefinition(name="infra", template=Path("t.yml")),
                StackDefinition(name="db", template=Path("t.yml"), depends_on=["infra"]),
                StackDefinition(name="api", template=Path("t.yml"), depends_on=["db"]),
                StackDefinition(name="web", template=Path("t.yml")),
            )
        )

    def test_subset_keeps_transitive_dependencies(self):
        """subset() pulls in everything the targets need, in plan order."""
        assert self._plan().subset(["api"]).names == ["infra", "db", "api"]

    def test_subset_unknown_target(self):
        """Unknown targets raise KeyError."""
        with pytest.raises(KeyError):
            self._plan().subset(["nope"])

    def test_stack_output(self):
        """Outputs are read-only lookups."""
        output = StackOutput(stack="infra", values={"Url": "u"})
        assert "Url" in output
        assert output.get("Missing") is None
        with pytest.raises(ValidationError):
            output.stack = "x"

    def test_terminal_states(self):
        """Only engine outcomes are terminal."""
        assert StackState.ROLLED_BACK.is_terminal
        assert not StackState.IN_PROGRESS.is_terminal


class TestRunConfig:
    """RunConfig validation."""

    def test_unknown_build_rejected(self):
        """Stacks may only reference declared builds."""
        with pytest.raises(ValidationError):
            RunConfig(
                environment="dev",
                stacks=[
                    StackDefinition(name="web", template=Path("t.yml"), parameters={"Image": {"build": "web"}})
                ],
            )

    def test_remote_name(self):
        """Remote names are prefixed with the environment unless disabled."""
        config = RunConfig(environment="octo-shop", stacks=[StackDefinition(name="infra", template=Path("t.yml"))])
        assert config.remote_name("infra") == "octo-shop-infra"
        assert config.model_copy(update={"stack_prefix": False}).remote_name("infra") == "infra"

    def test_build_spec_environment(self):
        """Repository names may embed the environment."""
        spec = BuildSpec(repository="github-actions-${environment}")
        assert spec.for_environment("octo-shop").repository == "github-actions-octo-shop"

    def test_artifact_uri(self):
        """URIs are registry/repository:tag."""
        artifact = ArtifactReference(registry="123.dkr.ecr.us-east-2.amazonaws.com", repository="repo", tag="webapp-abc")
        assert artifact.uri == "123.dkr.ecr.us-east-2.amazonaws.com/repo:webapp-abc"
        assert ArtifactReference(repository="repo", tag="t").uri == "repo:t"
