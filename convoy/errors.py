# -----------------------------------------------------------------------------
# ERROR TAXONOMY
# -----------------------------------------------------------------------------
# Every failure that can halt a run. Each carries the stack it happened on,
# the phase it happened in, and the remote reason string when there is one,
# so an operator can diagnose a run without re-running it.
#
#   GraphError          plan     pre-execution, no remote side effects
#   PolicyViolation     policy   pre-execution, no remote side effects
#   BuildError          build    toolchain or push failed
#   ConvergenceError    converge remote state known: terminal failure
#   ConvergenceTimeout  converge remote state UNKNOWN: inspect manually
#   UnresolvedReference resolve  internal defect, plan/outputs disagree
# -----------------------------------------------------------------------------


class ConvoyError(Exception):
    """Base class for run-halting errors."""

    phase = "run"

    def __init__(self, message: str, stack: str | None = None, reason: str = "") -> None:
        super().__init__(message)
        self.stack = stack
        self.reason = reason


class GraphError(ConvoyError):
    """The stack graph cannot be turned into a plan."""

    phase = "plan"


class UnknownDependencyError(GraphError):
    """A stack depends on (or references) a stack that is not defined."""

    def __init__(self, stack: str, dependency: str) -> None:
        super().__init__(
            f"Stack '{stack}' depends on unknown stack '{dependency}'",
            stack=stack,
            reason=f"missing: {dependency}",
        )
        self.dependency = dependency


class CycleError(GraphError):
    """The dependency graph is not a DAG."""

    def __init__(self, cycle: list[str]) -> None:
        path = " -> ".join(cycle)
        super().__init__(
            f"Dependency cycle detected: {path}",
            stack=cycle[0] if cycle else None,
            reason=path,
        )
        self.cycle = cycle


class PolicyViolation(ConvoyError):
    """
    Raised when a run violates deployment policy.

    Contains details about which rule was violated.
    """

    phase = "policy"

    def __init__(self, message: str, rule: str, details: str = "", stack: str | None = None) -> None:
        super().__init__(message, stack=stack, reason=details)
        self.rule = rule
        self.details = details


class BuildError(ConvoyError):
    """The build toolchain or the registry push failed."""

    phase = "build"

    def __init__(
        self, message: str, exit_status: int, output: str, stack: str | None = None
    ) -> None:
        super().__init__(message, stack=stack, reason=output[-500:])
        self.exit_status = exit_status
        self.output = output


class ConvergenceError(ConvoyError):
    """The provisioning engine reached a terminal failure state."""

    phase = "converge"

    def __init__(self, message: str, stack: str, status: str, reason: str = "") -> None:
        super().__init__(message, stack=stack, reason=reason)
        self.status = status


class ConvergenceTimeoutError(ConvoyError):
    """
    Maximum wait exceeded while the stack was still moving.

    Not a ConvergenceError: the remote stack may still converge,
    so its final state is indeterminate.
    """

    phase = "converge"

    def __init__(self, stack: str, last_status: str | None, waited_seconds: float) -> None:
        super().__init__(
            f"Stack '{stack}' did not reach a terminal state within {waited_seconds:.0f}s "
            f"(last status: {last_status or 'unknown'}); remote state is indeterminate",
            stack=stack,
            reason=last_status or "",
        )
        self.last_status = last_status
        self.waited_seconds = waited_seconds


class UnresolvedReferenceError(ConvoyError):
    """A parameter references a value that has not been produced."""

    phase = "resolve"


class NetworkLookupError(ConvoyError):
    """Default network discovery found nothing usable."""

    phase = "resolve"
