# -----------------------------------------------------------------------------
# INFRASTRUCTURE LAYER
# -----------------------------------------------------------------------------
# Contains low-level infrastructure wrappers:
# - CloudFormationProvisioner: create/update/describe, never delete
# - DockerProvider: Docker SDK connection
# - EcrRegistryAuth / StaticRegistryAuth: registry logins
# - EnvSecretsProvider / SecretsManagerProvider: credential lookups
# - DefaultNetworkLookup: default VPC and subnets
# -----------------------------------------------------------------------------

from .cloudformation import CloudFormationProvisioner, ProvisionerError, RemoteStack
from .docker_client import DockerProvider, DockerProviderError
from .network import DefaultNetworkLookup
from .registry import EcrRegistryAuth, RegistryAuthError, StaticRegistryAuth
from .secrets import EnvSecretsProvider, SecretNotFoundError, SecretsManagerProvider

__all__ = [
    "CloudFormationProvisioner", "ProvisionerError", "RemoteStack",
    "DockerProvider", "DockerProviderError",
    "DefaultNetworkLookup",
    "EcrRegistryAuth", "RegistryAuthError", "StaticRegistryAuth",
    "EnvSecretsProvider", "SecretNotFoundError", "SecretsManagerProvider",
]
