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
# DOMAIN MODELS - STACKS, REFERENCES, ARTIFACTS
# -----------------------------------------------------------------------------
# These Pydantic models describe a deployment run: which stacks exist, which
# template each one submits, and where every parameter value comes from.
# The Resolver orders them; the Driver converges them; nothing mutates them.
#
# A parameter is either a literal or a reference that is resolved lazily,
# right before its stack is submitted:
#   - OutputRef:   another stack's output   ({output: "infra.VpcId"})
#   - ArtifactRef: an image built this run  ({build: "webapp"})
#   - NetworkRef:  default VPC discovery    ({network: "subnet_one"})
#   - SecretRef:   secrets provider lookup  ({secret: "db/password"})
# -----------------------------------------------------------------------------

from enum import Enum
from pathlib import Path
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, field_validator, model_validator

ENVIRONMENT_PLACEHOLDER = "${environment}"

DEFAULT_CAPABILITIES = ("CAPABILITY_IAM", "CAPABILITY_NAMED_IAM")


def substitute_environment(value: str, environment: str) -> str:
    """Replace every ${environment} placeholder with the environment name."""
    return value.replace(ENVIRONMENT_PLACEHOLDER, environment)


class StackState(str, Enum):
    """
    Lifecycle of a single stack within a run.

    PENDING -> SUBMITTED -> IN_PROGRESS -> {SUCCEEDED | FAILED | ROLLED_BACK}

    TIMED_OUT, CANCELLED and SKIPPED are run-level verdicts recorded by the
    Orchestrator; the remote stack itself may still be moving.
    """

    PENDING = "PENDING"
    SUBMITTED = "SUBMITTED"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"
    TIMED_OUT = "TIMED_OUT"
    CANCELLED = "CANCELLED"
    SKIPPED = "SKIPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (StackState.SUCCEEDED, StackState.FAILED, StackState.ROLLED_BACK)


class RunStatus(str, Enum):
    """Overall verdict of a run."""

    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    CANCELLED = "CANCELLED"


# =============================================================================
# PARAMETER REFERENCES
# =============================================================================


class LiteralValue(BaseModel):
    """A fixed parameter value. Strings may contain ${environment}."""

    kind: Literal["literal"] = "literal"
    value: Union[bool, int, float, str]

    class Config:
        frozen = True

    def render(self, environment: str) -> str:
        if isinstance(self.value, bool):
            return "true" if self.value else "false"
        return substitute_environment(str(self.value), environment)


class OutputRef(BaseModel):
    """Reference to an output of a previously converged stack."""

    kind: Literal["output"] = "output"
    stack: str = Field(..., min_length=1)
    key: str = Field(..., min_length=1)

    class Config:
        frozen = True

    def __str__(self) -> str:
        return f"{self.stack}.{self.key}"


class ArtifactRef(BaseModel):
    """Reference to the image URI produced by a named build."""

    kind: Literal["build"] = "build"
    build: str = Field(..., min_length=1)

    class Config:
        frozen = True

    def __str__(self) -> str:
        return f"build:{self.build}"


class NetworkRef(BaseModel):
    """Reference to an attribute of the account's default network."""

    kind: Literal["network"] = "network"
    attribute: Literal["vpc_id", "subnet_one", "subnet_two"]

    class Config:
        frozen = True

    def __str__(self) -> str:
        return f"network:{self.attribute}"


class SecretRef(BaseModel):
    """Reference to a value held by the secrets provider. Never logged."""

    kind: Literal["secret"] = "secret"
    key: str = Field(..., min_length=1)

    class Config:
        frozen = True

    def __str__(self) -> str:
        return f"secret:{self.key}"


ParameterReference = Annotated[
    Union[LiteralValue, OutputRef, ArtifactRef, NetworkRef, SecretRef],
    Field(discriminator="kind"),
]

_REFERENCE_TYPES = (LiteralValue, OutputRef, ArtifactRef, NetworkRef, SecretRef)


def _parse_output_target(target: str) -> OutputRef:
    stack, sep, key = target.partition(".")
    if not sep or not stack or not key:
        raise ValueError(f"Output reference '{target}' must look like 'stack.OutputKey'")
    return OutputRef(stack=stack, key=key)


def ref(target: str):
    """
    Build a reference from its short textual form.

    Examples:
        ref("build:webapp")       -> ArtifactRef
        ref("network:vpc_id")     -> NetworkRef
        ref("secret:db/password") -> SecretRef
        ref("infra.VpcId")        -> OutputRef
    """
    prefix, sep, rest = target.partition(":")
    if sep:
        if prefix == "build":
            return ArtifactRef(build=rest)
        if prefix == "network":
            return NetworkRef(attribute=rest)
        if prefix == "secret":
            return SecretRef(key=rest)
        if prefix == "output":
            return _parse_output_target(rest)
        raise ValueError(f"Unknown reference type '{prefix}' in '{target}'")
    return _parse_output_target(target)


def parse_parameter(raw: Any):
    """
    Turn a raw run-file value into a parameter reference.

    Accepted forms: a scalar literal, a ``"ref:<target>"`` string, a single-key
    mapping (``{output: ...}``, ``{build: ...}``, ``{network: ...}``,
    ``{secret: ...}``) or an already-typed reference.
    """
    if isinstance(raw, _REFERENCE_TYPES):
        return raw

    if isinstance(raw, dict):
        if "kind" in raw:
            return raw
        if len(raw) != 1:
            raise ValueError(f"Parameter reference must have exactly one key, got {sorted(raw)}")
        kind, target = next(iter(raw.items()))
        if kind == "output":
            return _parse_output_target(str(target))
        if kind == "build":
            return ArtifactRef(build=str(target))
        if kind == "network":
            return NetworkRef(attribute=str(target))
        if kind == "secret":
            return SecretRef(key=str(target))
        raise ValueError(f"Unknown parameter reference '{kind}'")

    if isinstance(raw, str) and raw.startswith("ref:"):
        return ref(raw[len("ref:"):])

    if raw is None:
        raise ValueError("Parameter value cannot be empty")

    return LiteralValue(value=raw)


# =============================================================================
# STACKS
# =============================================================================


class HealthCheck(BaseModel):
    """Post-convergence check of a URL published as a stack output."""

    output: str = Field(..., description="Output key holding the base URL")
    path: str = "/"
    timeout: int = Field(10, gt=0)
    retries: int = Field(3, ge=1)

    class Config:
        frozen = True


class StackDefinition(BaseModel):
    """
    A named, independently deployable unit: one template plus its parameters.

    Fields:
    - name: Unique within a run; also the suffix of the remote stack name
    - template: Path to the CloudFormation template body
    - parameters: Ordered mapping of parameter name -> reference
    - depends_on: Stacks that must converge first
    - outputs: Output keys this stack promises (empty = take all)
    """

    name: str = Field(
        ...,
        min_length=1,
        max_length=64,
        pattern=r"^[a-zA-Z][a-zA-Z0-9-]*$",
    )
    template: Path
    parameters: dict[str, ParameterReference] = Field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()
    capabilities: tuple[str, ...] = DEFAULT_CAPABILITIES
    tags: dict[str, str] = Field(default_factory=dict)
    healthcheck: HealthCheck | None = None

    class Config:
        frozen = True
        str_strip_whitespace = True

    @field_validator("parameters", mode="before")
    @classmethod
    def _parse_parameters(cls, value: Any) -> Any:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("parameters must be a mapping of name -> value")
        return {str(name): parse_parameter(raw) for name, raw in value.items()}

    def dependencies(self) -> list[str]:
        """Declared dependencies followed by stacks referenced through outputs."""
        names: list[str] = []
        for name in self.depends_on:
            if name not in names:
                names.append(name)
        for reference in self.parameters.values():
            if isinstance(reference, OutputRef) and reference.stack not in names:
                names.append(reference.stack)
        return names

    def builds(self) -> list[str]:
        """Names of the builds whose artifacts this stack consumes."""
        names: list[str] = []
        for reference in self.parameters.values():
            if isinstance(reference, ArtifactRef) and reference.build not in names:
                names.append(reference.build)
        return names


class StackOutput(BaseModel):
    """Outputs recorded once a stack reaches SUCCEEDED. Read-only."""

    stack: str
    values: dict[str, str] = Field(default_factory=dict)

    class Config:
        frozen = True

    def get(self, key: str) -> str | None:
        return self.values.get(key)

    def __contains__(self, key: str) -> bool:
        return key in self.values


class DeploymentPlan(BaseModel):
    """Stacks in topological order: every dependency precedes its dependents."""

    stacks: tuple[StackDefinition, ...] = ()

    class Config:
        frozen = True

    @property
    def names(self) -> list[str]:
        return [stack.name for stack in self.stacks]

    def __iter__(self):
        return iter(self.stacks)

    def __len__(self) -> int:
        return len(self.stacks)

    def get(self, name: str) -> StackDefinition | None:
        for stack in self.stacks:
            if stack.name == name:
                return stack
        return None

    def subset(self, targets: list[str]) -> "DeploymentPlan":
        """
        Keep only the target stacks and everything they depend on.

        Order is preserved, so the subset is itself a valid plan.

        Raises:
            KeyError: If a target is not part of the plan.
        """
        by_name = {stack.name: stack for stack in self.stacks}
        keep: set[str] = set()
        pending = list(targets)
        while pending:
            name = pending.pop()
            if name in keep:
                continue
            if name not in by_name:
                raise KeyError(name)
            keep.add(name)
            pending.extend(by_name[name].dependencies())
        return DeploymentPlan(stacks=tuple(s for s in self.stacks if s.name in keep))


# =============================================================================
# ARTIFACTS
# =============================================================================


class BuildSpec(BaseModel):
    """How to build and where to publish one container image."""

    context: Path = Path(".")
    dockerfile: str = "Dockerfile"
    repository: str = Field(..., min_length=1)
    tag_prefix: str | None = None
    build_args: dict[str, str] = Field(default_factory=dict)
    unique_tag: bool = True

    class Config:
        frozen = True

    def for_environment(self, environment: str) -> "BuildSpec":
        return self.model_copy(
            update={"repository": substitute_environment(self.repository, environment)}
        )


class ArtifactReference(BaseModel):
    """A published image: registry address plus content tag."""

    registry: str = ""
    repository: str
    tag: str
    digest: str | None = None

    class Config:
        frozen = True

    @property
    def uri(self) -> str:
        if self.registry:
            return f"{self.registry}/{self.repository}:{self.tag}"
        return f"{self.repository}:{self.tag}"

    def __str__(self) -> str:
        return self.uri


# =============================================================================
# RUN CONFIGURATION
# =============================================================================


class RunConfig(BaseModel):
    """
    Everything a single run needs: the environment, its stacks and builds.

    Remote stack names are "<environment>-<stack>" unless stack_prefix is off.
    """

    environment: str = Field(..., min_length=1, pattern=r"^[a-zA-Z0-9][a-zA-Z0-9-]*$")
    stacks: list[StackDefinition] = Field(..., min_length=1)
    builds: dict[str, BuildSpec] = Field(default_factory=dict)
    revision: str | None = None
    stack_prefix: bool = True

    @model_validator(mode="after")
    def _check_build_references(self) -> "RunConfig":
        for stack in self.stacks:
            for build in stack.builds():
                if build not in self.builds:
                    raise ValueError(
                        f"Stack '{stack.name}' references unknown build '{build}'"
                    )
        return self

    def remote_name(self, stack_name: str) -> str:
        if self.stack_prefix:
            return f"{self.environment}-{stack_name}"
        return stack_name
