"""
Synthesis Stage - Meta-Analysis Across Results

Runs only when synthesis_question.txt is in the input directory.
All successful per-document results are concatenated under labelled
markers, followed by the question, and sent to the model as a single
CLI call.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING

from ..config import SYNTHESIS_TRIGGER, JobConfig
from ..job import JobResult, SynthesisResult
from ..sanitizer import sanitize_file
from ..workspace import Workspace

if TYPE_CHECKING:
    from ..ollama_controller import OllamaSession

logger = logging.getLogger(__name__)

# Tokens held back from the context window for the model's answer
CONTEXT_RESERVE = 1000
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Rough token count: characters / 4."""
    return len(text) // CHARS_PER_TOKEN


def build_synthesis_prompt(question: str, results: list[tuple[str, str]]) -> str:
    """Combine the question and per-document results into one prompt.

    Args:
        question: Synthesis question
        results: (result filename, result text) pairs in batch order

    Returns:
        Prompt text
    """
    parts = [
        f"SYNTHESIS QUESTION: {question}",
        "",
        "ANALYSIS RESULTS TO SYNTHESIZE:",
        "================================",
        "",
    ]

    for i, (name, text) in enumerate(results, start=1):
        parts.append(f"--- RESULT {i}: {name} ---")
        parts.append(text.rstrip("\n"))
        parts.append("")
        parts.append(f"--- END RESULT {i} ---")
        parts.append("")

    parts.append("SYNTHESIS INSTRUCTION:")
    parts.append(
        "Based on all the analysis results above, please provide a comprehensive "
        f"synthesis that addresses the original question: {question}"
    )
    return "\n".join(parts) + "\n"


def read_question(input_dir: str | Path) -> str | None:
    """Synthesis question text, or None if the trigger file is absent."""
    trigger = Path(input_dir) / SYNTHESIS_TRIGGER
    if not trigger.is_file():
        return None
    return trigger.read_text(encoding="utf-8", errors="replace").strip()


def run_synthesis_stage(
    session: OllamaSession,
    workspace: Workspace,
    job_config: JobConfig,
    results: list[JobResult],
) -> SynthesisResult | None:
    """Run the meta-analysis over all successful results.

    Args:
        session: Ready Ollama session
        workspace: Batch directory tree (must have synthesis enabled)
        job_config: Run configuration
        results: Batch results in processing order

    Returns:
        SynthesisResult, or None if synthesis was skipped (no or empty question)
    """
    question = read_question(job_config.input_dir)
    if question is None:
        return None
    if not question:
        logger.warning(f"[Synthesis] {SYNTHESIS_TRIGGER} is empty, skipping synthesis")
        return None

    logger.info(f"[Synthesis] Question: {question}")

    successful = [r for r in results if r.status == "success" and r.result_file]
    sections = [
        (Path(r.result_file).name, Path(r.result_file).read_text(encoding="utf-8"))
        for r in successful
    ]
    prompt = build_synthesis_prompt(question, sections)

    estimated = estimate_tokens(prompt)
    available = job_config.context_size - CONTEXT_RESERVE
    over_budget = estimated > available

    logger.info(f"[Synthesis] Result files: {len(sections)}")
    logger.info(f"[Synthesis] Estimated tokens: {estimated} (available: {available})")
    if over_budget:
        logger.warning("[Synthesis] Combined results may exceed the context window")

    output_file = workspace.synthesis_output
    raw_file = output_file.with_name(output_file.name + ".raw")

    logger.info("[Synthesis] Running synthesis analysis...")
    start = time.monotonic()
    raw = session.run_cli(prompt, timeout=job_config.synthesis_timeout, phase="synthesizing")
    elapsed = time.monotonic() - start

    raw_file.write_text(raw, encoding="utf-8", newline="")
    try:
        ok = sanitize_file(raw_file, output_file)
    finally:
        raw_file.unlink(missing_ok=True)

    if ok:
        logger.info(f"[Synthesis] Completed in {elapsed:.0f}s")
    else:
        logger.error("[Synthesis] Failed - no valid output generated")
        output_file.write_text(
            f"Error: Synthesis produced no valid output\nQuestion: {question}\n",
            encoding="utf-8",
        )

    return SynthesisResult(
        question=question,
        referenced=tuple(r.filename for r in successful),
        status="success" if ok else "failed",
        output_file=str(output_file),
        output_bytes=output_file.stat().st_size,
        elapsed=elapsed,
        estimated_tokens=estimated,
        over_budget=over_budget,
    )
