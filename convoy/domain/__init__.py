# -----------------------------------------------------------------------------
# DOMAIN LAYER
# -----------------------------------------------------------------------------
# Pydantic models describing a run: stacks, parameter references, builds,
# artifacts and the plan the Resolver produces from them.
# -----------------------------------------------------------------------------

from .models import (
    ArtifactRef,
    ArtifactReference,
    BuildSpec,
    DeploymentPlan,
    HealthCheck,
    LiteralValue,
    NetworkRef,
    OutputRef,
    RunConfig,
    RunStatus,
    SecretRef,
    StackDefinition,
    StackOutput,
    StackState,
    parse_parameter,
    ref,
)

__all__ = [
    "ArtifactRef", "ArtifactReference", "BuildSpec", "DeploymentPlan",
    "HealthCheck", "LiteralValue", "NetworkRef", "OutputRef", "RunConfig",
    "RunStatus", "SecretRef", "StackDefinition", "StackOutput", "StackState",
    "parse_parameter", "ref",
]
