# -----------------------------------------------------------------------------
# HEALTH CHECK
# -----------------------------------------------------------------------------
# Responsibility: After a stack converges, request the URL it publishes
# (e.g. a load balancer's ServiceURL output) to confirm it answers.
# The verdict is recorded on the run report; it never halts a run.
# -----------------------------------------------------------------------------

import time

import requests
from rich.console import Console

from convoy.domain.models import HealthCheck, StackOutput

console = Console()

RETRY_DELAY_SECONDS = 3


class HealthChecker:
    """HTTP health check for converged stacks."""

    def __init__(self, retry_delay: float = RETRY_DELAY_SECONDS) -> None:
        self._retry_delay = retry_delay

    def verify(self, check: HealthCheck, outputs: StackOutput) -> bool:
        """
        Verify that the URL in `check.output` answers with a 2xx/3xx status.

        Args:
            check: Which output to check and how.
            outputs: The converged stack's outputs.

        Returns:
            True if the URL responds with a non-error status.
        """
        base = outputs.get(check.output)
        if not base:
            console.print(
                f"[yellow][HEALTH] {outputs.stack}: output '{check.output}' not found[/yellow]"
            )
            return False

        if not base.startswith(("http://", "https://")):
            base = f"http://{base}"
        url = base.rstrip("/") + "/" + check.path.lstrip("/")
        console.print(f"[cyan][HEALTH] Verifying {url}...[/cyan]")

        for attempt in range(check.retries):
            if attempt > 0:
                time.sleep(self._retry_delay)

            try:
                response = requests.get(url, timeout=check.timeout, allow_redirects=True)
            except requests.RequestException as e:
                console.print(
                    f"[yellow][HEALTH] Request failed: {e} (attempt {attempt + 1}/{check.retries})[/yellow]"
                )
                continue

            if 200 <= response.status_code < 400:
                console.print(f"[green][HEALTH] Got {response.status_code} from {url}[/green]")
                return True

            console.print(
                f"[yellow][HEALTH] Got {response.status_code} (attempt {attempt + 1}/{check.retries})[/yellow]"
            )

        return False
