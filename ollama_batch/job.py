"""
Batch Run State

Tracks a batch run in batch_info/job.json for:
- Status monitoring while the run is in progress
- Reconstructing results after a partial failure
- Recording the exact configuration the run used
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

logger = logging.getLogger(__name__)

RunStatus = Literal["pending", "running", "completed", "failed"]
StageStatus = Literal["pending", "running", "completed", "failed", "skipped"]
StageName = Literal["batch", "synthesis"]
ResultStatus = Literal["success", "failed", "skipped"]

STAGE_ORDER: list[StageName] = ["batch", "synthesis"]


def now_iso() -> str:
    """Get current time as ISO string."""
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class JobResult:
    """Outcome of processing one input document."""

    filename: str
    status: ResultStatus
    output_bytes: int = 0
    elapsed: float = 0.0
    reasoning: bool = False
    result_file: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SynthesisResult:
    """Outcome of the meta-analysis over all successful results."""

    question: str
    referenced: tuple[str, ...]
    status: Literal["success", "failed"]
    output_file: str
    output_bytes: int = 0
    elapsed: float = 0.0
    estimated_tokens: int = 0
    over_budget: bool = False

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["referenced"] = list(self.referenced)
        return data


def create_run_state(
    batch_id: str,
    job_config: dict[str, Any],
    devices: dict[str, Any],
    output_dir: str | Path,
) -> dict[str, Any]:
    """Create the initial state dict of a batch run.

    Args:
        batch_id: Batch timestamp
        job_config: Serialized JobConfig
        devices: Resolved device set info
        output_dir: Batch root directory

    Returns:
        Run state dict (not yet saved)
    """
    logger.info(f"Created batch run {batch_id}: {job_config.get('model')}")
    return {
        "batch_id": batch_id,
        "status": "pending",
        "created_at": now_iso(),
        "updated_at": now_iso(),
        "config": job_config,
        "devices": devices,
        "output_dir": str(output_dir),
        "model": job_config.get("model"),
        "current_stage": None,
        "stages": {
            stage: {
                "status": "pending",
                "started_at": None,
                "completed_at": None,
                "stats": {},
                "error": None,
            }
            for stage in STAGE_ORDER
        },
        "results": [],
        "synthesis": None,
        "error": None,
    }


def save_state(state: dict[str, Any], state_file: Path) -> None:
    """Save run state to disk.

    Args:
        state: Run state dict to save
        state_file: Path of job.json
    """
    state["updated_at"] = now_iso()
    state_file.parent.mkdir(parents=True, exist_ok=True)

    with open(state_file, "w") as f:
        json.dump(state, f, indent=2)


def load_state(state_file: Path) -> dict[str, Any]:
    """Load run state from disk.

    Raises:
        FileNotFoundError: If the state file doesn't exist
    """
    if not state_file.exists():
        raise FileNotFoundError(f"Batch state not found: {state_file}")

    with open(state_file) as f:
        return json.load(f)


def update_stage(
    state: dict[str, Any],
    stage: StageName,
    status: StageStatus,
    state_file: Path,
    stats: dict | None = None,
    error: str | None = None,
) -> None:
    """Update stage status and save state.

    Args:
        state: Run state dict to update
        stage: Stage name
        status: New status
        state_file: Path of job.json
        stats: Optional stats to merge
        error: Optional error message
    """
    stage_data = state["stages"][stage]

    if status == "running" and stage_data["status"] != "running":
        stage_data["started_at"] = now_iso()
    elif status in ("completed", "failed", "skipped"):
        stage_data["completed_at"] = now_iso()

    stage_data["status"] = status

    if stats is not None:
        stage_data["stats"].update(stats)

    if error is not None:
        stage_data["error"] = error

    state["current_stage"] = stage
    save_state(state, state_file)


def record_result(state: dict[str, Any], result: JobResult, state_file: Path) -> None:
    """Append a job result to the run state and save it."""
    state["results"].append(result.to_dict())
    save_state(state, state_file)


def count_results(results: list[JobResult]) -> dict[str, int]:
    """Count results by status."""
    counts = {"success": 0, "failed": 0, "skipped": 0}
    for result in results:
        counts[result.status] += 1
    return counts


def format_run_status(state: dict[str, Any]) -> str:
    """Format run status for display.

    Args:
        state: Run state dict

    Returns:
        Formatted status string
    """
    lines = [
        f"Batch: {state['batch_id']} - {state['model']}",
        f"Status: {state['status']}",
        f"Output: {state['output_dir']}",
        "",
        "Stages:",
    ]

    status_icons = {
        "pending": "○",
        "running": "◐",
        "completed": "●",
        "failed": "✗",
        "skipped": "○",
    }

    for stage in STAGE_ORDER:
        stage_data = state["stages"][stage]
        icon = status_icons.get(stage_data["status"], "?")
        line = f"  {icon} {stage}: {stage_data['status']}"

        stats = stage_data["stats"]
        if "processed" in stats and "total" in stats:
            line += f" ({stats['processed']}/{stats['total']})"

        if stage_data["error"]:
            line += f" - {stage_data['error'][:50]}"

        lines.append(line)

    if state["error"]:
        lines.append("")
        lines.append(f"Error: {state['error']}")

    return "\n".join(lines)
