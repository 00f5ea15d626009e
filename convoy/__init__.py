# -----------------------------------------------------------------------------
# CONVOY
# -----------------------------------------------------------------------------
# Ordered, fail-fast deployment of interdependent CloudFormation stacks and
# the container images they run.
#
# Layers:
# - domain: Pydantic models (stacks, references, plans, artifacts)
# - core:   Resolver, Builder, Driver, Orchestrator, Policy, Ledger
# - infra:  boto3 / Docker SDK wrappers
# -----------------------------------------------------------------------------

__version__ = "1.0.0"
