# -----------------------------------------------------------------------------
# THE LEDGER - RUN EVIDENCE
# -----------------------------------------------------------------------------
# Responsibility: Leave a trail for every run, pass or fail.
#
# Every run creates a dedicated folder with:
# - plan.json: The resolved order and the run configuration
# - result.json: Final states, outputs and the first fatal error
# - flight_recorder.json: Every state transition, timestamped
#
# Secret parameter values never reach disk; they are masked upstream.
# -----------------------------------------------------------------------------

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from rich.console import Console

from convoy.domain.models import DeploymentPlan, RunConfig

console = Console()

RUNS_DIR = Path("runs")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class FlightLogEntry:
    """A single entry in the flight recorder."""

    timestamp: str
    event: str
    stack: str | None = None
    details: str | None = None


class RunLedger:
    """
    The Flight Recorder for one run.

    Everything an operator needs to diagnose a failed or timed-out run
    without re-running it.
    """

    def __init__(self, run_id: str, runs_dir: Path = RUNS_DIR) -> None:
        self.run_id = run_id
        self.folder = runs_dir / run_id
        self.folder.mkdir(parents=True, exist_ok=True)
        self._log: list[FlightLogEntry] = []

        console.print(f"[cyan][LEDGER] Evidence folder: {self.folder}[/cyan]")

    def log(self, event: str, stack: str | None = None, details: str | None = None) -> None:
        """Record an event in the flight recorder."""
        self._log.append(
            FlightLogEntry(timestamp=_now(), event=event, stack=stack, details=details)
        )

    def _write(self, name: str, payload: Any) -> Path:
        path = self.folder / name
        with open(path, "w") as f:
            json.dump(payload, f, indent=2, default=str)
        return path

    def save_plan(self, plan: DeploymentPlan, config: RunConfig) -> None:
        """Save plan.json to the evidence folder."""
        path = self._write(
            "plan.json",
            {
                "timestamp": _now(),
                "environment": config.environment,
                "revision": config.revision,
                "order": plan.names,
                "config": config.model_dump(mode="json"),
            },
        )
        self.log("PLAN_SAVED", details=str(path))

    def save_result(self, result: dict[str, Any]) -> None:
        """Save result.json to the evidence folder."""
        path = self._write("result.json", {"timestamp": _now(), **result})
        self.log("RESULT_SAVED", details=str(path))

    def finalize(self) -> None:
        """Save flight_recorder.json - Complete session log."""
        path = self._write(
            "flight_recorder.json",
            [
                {
                    "timestamp": e.timestamp,
                    "event": e.event,
                    "stack": e.stack,
                    "details": e.details,
                }
                for e in self._log
            ],
        )
        console.print(f"[green][LEDGER] Flight recorder saved: {path}[/green]")
