# -----------------------------------------------------------------------------
# DEFAULT NETWORK LOOKUP
# -----------------------------------------------------------------------------
# Responsibility: Discover the account's default VPC and two of its public
# default-for-AZ subnets, for templates that take VPC / subnet parameters.
# Looked up once per run, on first use.
# -----------------------------------------------------------------------------

from typing import Any

from botocore.exceptions import ClientError
from rich.console import Console

from convoy.errors import NetworkLookupError

console = Console()


class DefaultNetworkLookup:
    """Resolves NetworkRef attributes: vpc_id, subnet_one, subnet_two."""

    def __init__(self, client: Any) -> None:
        """
        Args:
            client: A boto3 EC2 client.
        """
        self._client = client
        self._facts: dict[str, str] | None = None

    def _discover(self) -> dict[str, str]:
        try:
            return self._discover_default()
        except ClientError as e:
            raise NetworkLookupError(f"Default network lookup failed: {e}", reason=str(e)) from e

    def _discover_default(self) -> dict[str, str]:
        vpcs = self._client.describe_vpcs(
            Filters=[{"Name": "isDefault", "Values": ["true"]}]
        ).get("Vpcs", [])
        if not vpcs:
            raise NetworkLookupError("No default VPC found in this region")
        vpc_id = vpcs[0]["VpcId"]

        subnets = self._client.describe_subnets(
            Filters=[
                {"Name": "vpc-id", "Values": [vpc_id]},
                {"Name": "default-for-az", "Values": ["true"]},
            ]
        ).get("Subnets", [])
        subnets = sorted(subnets, key=lambda s: s.get("AvailabilityZone", s["SubnetId"]))
        if len(subnets) < 2:
            raise NetworkLookupError(
                f"Default VPC {vpc_id} has {len(subnets)} default subnet(s), need 2"
            )

        facts = {
            "vpc_id": vpc_id,
            "subnet_one": subnets[0]["SubnetId"],
            "subnet_two": subnets[1]["SubnetId"],
        }
        console.print(
            f"[green][NETWORK] VPC {vpc_id}: {facts['subnet_one']}, {facts['subnet_two']}[/green]"
        )
        return facts

    def lookup(self, attribute: str) -> str:
        if self._facts is None:
            self._facts = self._discover()
        if attribute not in self._facts:
            raise NetworkLookupError(f"Unknown network attribute '{attribute}'")
        return self._facts[attribute]
