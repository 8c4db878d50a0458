"""
Batch Summary and Technical Log

Two append-only text files per batch run in batch_info/:
- batch_summary_<ts>.txt: one line per document, final statistics
- technical_log_<ts>.txt: environment, per-document method trail, GPU memory

Every outcome (success, failure, skip) lands in both, so a run can be
reconstructed from its logs even after a partial failure.
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from .job import JobResult, SynthesisResult, count_results

if TYPE_CHECKING:
    from .config import JobConfig
    from .gpu import DeviceSet
    from .workspace import Workspace

RULE = "=" * 47


def _stamp() -> str:
    return datetime.now().strftime("%a %b %d %H:%M:%S %Y")


class RunLog:
    """Writes the human-readable summary and the technical log."""

    def __init__(self, workspace: Workspace):
        self.summary_file = workspace.summary_file
        self.technical_file = workspace.technical_log_file
        self.batch_id = workspace.timestamp

    def _append(self, path: Path, *lines: str) -> None:
        with open(path, "a", encoding="utf-8") as f:
            for line in lines:
                f.write(line + "\n")

    def summary(self, *lines: str) -> None:
        self._append(self.summary_file, *lines)

    def technical(self, *lines: str) -> None:
        self._append(self.technical_file, *lines)

    def write_header(
        self,
        job_config: JobConfig,
        devices: DeviceSet,
        active_model: str,
        environment: dict[str, str],
        document_count: int,
        server_pid: int | None = None,
        gpu_memory: list[str] | None = None,
    ) -> None:
        """Start both files with the run configuration."""
        self.summary(
            RULE,
            "OLLAMA LLM BATCH PROCESSING SUMMARY",
            RULE,
            f"Batch ID: {self.batch_id}",
            f"Started: {_stamp()}",
            "",
            "MODEL CONFIGURATION:",
            f"Original Model: {job_config.model}",
            f"Custom Model: {active_model}",
            f"Context Size: {job_config.context_size} tokens",
            f"Reasoning Mode: {str(job_config.reasoning).lower()}",
            f"Auto-run Mode: {str(job_config.auto_confirm).lower()}",
            "",
            "HARDWARE CONFIGURATION:",
            f"GPUs Used: {devices.visible_devices}",
            f"Total GPU Count: {devices.count}",
            f"Total Input Files: {document_count}",
            "",
        )

        self.technical(
            RULE,
            "TECHNICAL PROCESSING LOG",
            RULE,
            f"Batch ID: {self.batch_id}",
            f"Started: {_stamp()}",
            f"Server PID: {server_pid if server_pid is not None else '-'}",
            f"Reasoning Support: {str(job_config.supports_reasoning).lower()}",
            f"Reasoning Mode Enabled: {str(job_config.reasoning_enabled).lower()}",
            f"Auto-run Mode: {str(job_config.auto_confirm).lower()}",
            "",
            "ENVIRONMENT VARIABLES:",
            *(f"  {key}: {value}" for key, value in sorted(environment.items())),
            "",
            "GPU MEMORY STATUS (START):",
            *(gpu_memory or ["  unavailable"]),
            "",
        )

    def record(self, result: JobResult) -> None:
        """Log one document outcome to both files."""
        if result.status == "success":
            self.summary(
                f"SUCCESS: {result.filename} -> {Path(result.result_file).name} "
                f"({result.elapsed:.0f}s, {result.output_bytes} bytes)"
            )
            self.technical(
                f"  SUCCESS: {result.filename} processed in {result.elapsed:.0f}s, "
                f"output: {result.output_bytes} bytes"
            )
        elif result.status == "failed":
            self.summary(f"FAILED: {result.filename} -> FAILED ({result.error})")
            self.technical(f"  FAILED: {result.filename} - {result.error}")
        else:
            self.summary(f"SKIPPED: {result.filename} ({result.error})")
            self.technical(f"  SKIPPED: {result.error}")

    def write_footer(
        self,
        results: list[JobResult],
        duration: float,
        reasoning_files: int | None = None,
        gpu_memory: list[str] | None = None,
    ) -> None:
        """Append final statistics once all documents are processed."""
        counts = count_results(results)
        attempted = counts["success"] + counts["failed"]

        lines = [
            "",
            RULE,
            "FINAL RESULTS",
            RULE,
            f"Completed: {_stamp()}",
            f"Total files processed: {counts['success']}",
            f"Failed files: {counts['failed']}",
            f"Skipped files: {counts['skipped']}",
        ]
        if attempted:
            lines.append(f"Success rate: {counts['success'] * 100 // attempted}%")
            lines.append(f"Average time per file: {duration / attempted:.0f}s")
        lines.append(f"Total duration: {duration:.0f}s")

        if reasoning_files is not None:
            lines += ["", "REASONING ANALYSIS:", f"Reasoning files generated: {reasoning_files}"]

        self.summary(*lines)
        self.technical(
            "",
            f"Processing completed: {_stamp()}",
            f"Final stats: {counts['success']} successful, {counts['failed']} failed, "
            f"{counts['skipped']} skipped",
            "",
            "GPU MEMORY STATUS (END):",
            *(gpu_memory or ["  unavailable"]),
        )

    def record_synthesis(self, result: SynthesisResult) -> None:
        """Append synthesis metadata to both files."""
        self.technical(
            "",
            "SYNTHESIS ANALYSIS:",
            f"  Question: {result.question}",
            f"  Files: {len(result.referenced)}",
            f"  Estimated tokens: {result.estimated_tokens}",
        )
        if result.over_budget:
            self.technical("  WARNING: Token count may exceed context window")

        if result.status == "success":
            self.summary(
                "",
                RULE,
                "SYNTHESIS ANALYSIS",
                RULE,
                f"Question: {result.question}",
                f"Files analyzed: {len(result.referenced)}",
                f"Total tokens (estimated): {result.estimated_tokens}",
                f"Synthesis duration: {result.elapsed:.0f}s",
                f"Synthesis output size: {result.output_bytes} bytes",
                f"Output: synthesis_analysis/{Path(result.output_file).name}",
            )
            self.technical(
                f"  Synthesis completed successfully: {result.elapsed:.0f}s, "
                f"{result.output_bytes} bytes"
            )
        else:
            self.summary("", "Synthesis: FAILED")
            self.technical("  Synthesis failed - no valid output")
