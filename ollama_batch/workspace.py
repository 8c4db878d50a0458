"""
Batch Workspace

Creates the timestamped output tree for one batch run:

    <output_dir>/batch_<timestamp>/
        batch_info/           summary, technical log, job.json, server log
        analysis_outputs/     <name>_result.txt per prompt
        prompts_archive/      copy of every input prompt
        synthesis_analysis/   only when synthesis_question.txt is present
        reasoning_outputs/    only when reasoning mode is active
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .config import SYNTHESIS_TRIGGER

logger = logging.getLogger(__name__)

SYNTHESIS_OUTPUT_NAME = "SYNTHESIS_FINAL_ANALYSIS.txt"


def make_timestamp() -> str:
    """Batch identifier, e.g. 20250101_120000."""
    return datetime.now().strftime("%Y%m%d_%H%M%S")


@dataclass(frozen=True)
class Workspace:
    """Directory layout of one batch run."""

    root: Path
    timestamp: str
    batch_info: Path
    analysis: Path
    prompts_archive: Path
    synthesis: Path | None = None
    reasoning: Path | None = None

    @property
    def summary_file(self) -> Path:
        return self.batch_info / f"batch_summary_{self.timestamp}.txt"

    @property
    def technical_log_file(self) -> Path:
        return self.batch_info / f"technical_log_{self.timestamp}.txt"

    @property
    def state_file(self) -> Path:
        return self.batch_info / "job.json"

    @property
    def server_log(self) -> Path:
        return self.batch_info / "ollama_server.log"

    def result_path(self, document: Path) -> Path:
        return self.analysis / f"{document.stem}_result.txt"

    def reasoning_path(self, document: Path) -> Path:
        if self.reasoning is None:
            raise ValueError("Reasoning outputs are not enabled for this batch")
        return self.reasoning / f"{document.stem}_thinking.txt"

    @property
    def synthesis_output(self) -> Path:
        if self.synthesis is None:
            raise ValueError("Synthesis is not enabled for this batch")
        return self.synthesis / SYNTHESIS_OUTPUT_NAME


def build_workspace(
    output_dir: str | Path,
    timestamp: str,
    input_dir: str | Path,
    reasoning_enabled: bool = False,
) -> Workspace:
    """Create the batch directory tree and archive the input prompts.

    Args:
        output_dir: Root output directory
        timestamp: Batch identifier (see make_timestamp)
        input_dir: Directory of .txt prompts
        reasoning_enabled: Create reasoning_outputs/

    Returns:
        Workspace describing the created tree
    """
    input_dir = Path(input_dir)
    root = Path(output_dir) / f"batch_{timestamp}"

    workspace = Workspace(
        root=root,
        timestamp=timestamp,
        batch_info=root / "batch_info",
        analysis=root / "analysis_outputs",
        prompts_archive=root / "prompts_archive",
        synthesis=root / "synthesis_analysis" if (input_dir / SYNTHESIS_TRIGGER).is_file() else None,
        reasoning=root / "reasoning_outputs" if reasoning_enabled else None,
    )

    for directory in (
        workspace.batch_info,
        workspace.analysis,
        workspace.prompts_archive,
        workspace.synthesis,
        workspace.reasoning,
    ):
        if directory is not None:
            directory.mkdir(parents=True, exist_ok=True)

    # Archive before processing so the copies reflect pre-run state
    archived = 0
    for prompt in sorted(input_dir.glob("*.txt")):
        if prompt.is_file():
            shutil.copy2(prompt, workspace.prompts_archive / prompt.name)
            archived += 1

    logger.info(f"[Workspace] Created {root} ({archived} prompts archived)")
    if workspace.synthesis is not None:
        logger.info("[Workspace] Synthesis mode detected")
    if workspace.reasoning is not None:
        logger.info("[Workspace] Reasoning outputs enabled")

    return workspace
