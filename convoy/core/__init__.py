# -----------------------------------------------------------------------------
# CORE LAYER
# -----------------------------------------------------------------------------
# The business logic of a Convoy run:
# - resolve: Dependency Resolver (stack graph -> plan)
# - ArtifactBuilder: Image build + push
# - ConvergenceDriver: Create/update one stack and wait for it
# - Orchestrator: Run pipeline
# - DeploymentPolicy: Gatekeeper
# - RunLedger: Flight recorder
# -----------------------------------------------------------------------------

from .builder import ArtifactBuilder, make_image_tag
from .driver import ConvergenceDriver
from .healthcheck import HealthChecker
from .ledger import RunLedger
from .orchestrator import Orchestrator, RunResult, StackRecord
from .policy import DeploymentPolicy, PolicyConfig
from .resolver import resolve

__all__ = [
    "ArtifactBuilder", "make_image_tag",
    "ConvergenceDriver",
    "HealthChecker",
    "RunLedger",
    "Orchestrator", "RunResult", "StackRecord",
    "DeploymentPolicy", "PolicyConfig",
    "resolve",
]
