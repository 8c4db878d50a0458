"""
Batch Stage - One Inference per Prompt File

For each .txt prompt in the input directory (sorted, no recursion):
1. Skip empty prompts
2. Try the HTTP API, fall back to `ollama run` on error or empty reply
3. Clean the output; write a placeholder if nothing usable came back
4. Optionally ask again for a <thinking> trace (reasoning models)

Documents run strictly one at a time against the same GPU-resident model.
"""

from __future__ import annotations

import logging
import re
import time
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from ..config import SYNTHESIS_TRIGGER, JobConfig
from ..job import JobResult
from ..sanitizer import sanitize_file
from ..workspace import Workspace

if TYPE_CHECKING:
    from ..ollama_controller import OllamaSession
    from ..run_log import RunLog

logger = logging.getLogger(__name__)

# A result must be larger than this to count as a success
RESULT_MIN_BYTES = 20

REASONING_SUFFIX = (
    "\n\nPlease show your step-by-step thinking process for this analysis. "
    "Use <thinking> tags to show your reasoning before providing the final answer."
)
THINKING_SPAN = re.compile(r"<thinking>.*?(?:</thinking>|\Z)", re.DOTALL)
NO_REASONING_TEXT = "No reasoning process detected or model doesn't support reasoning\n"


def discover_documents(input_dir: str | Path) -> list[Path]:
    """Prompt files to process, excluding the synthesis trigger."""
    return sorted(
        p
        for p in Path(input_dir).glob("*.txt")
        if p.is_file() and p.name != SYNTHESIS_TRIGGER
    )


def failure_placeholder(filename: str, prompt: str) -> str:
    """Error document written in place of a missing result."""
    return f"Error: Unable to generate clean output for {filename}\nOriginal prompt: {prompt}\n"


def extract_thinking(raw: str) -> str:
    """Pull the <thinking> spans out of a response.

    Returns the concatenated spans (tags included), or "" if there are none.
    An unclosed tag runs to the end of the response.
    """
    return "\n".join(m.group(0) for m in THINKING_SPAN.finditer(raw))


def _write_cleaned(raw: str, output_file: Path) -> bool:
    """Run the sanitizer over raw text via a scratch .raw file."""
    raw_file = output_file.with_name(output_file.name + ".raw")
    raw_file.write_text(raw, encoding="utf-8", newline="")
    try:
        return sanitize_file(raw_file, output_file)
    finally:
        raw_file.unlink(missing_ok=True)


async def invoke_model(session: OllamaSession, prompt: str, job_config: JobConfig) -> tuple[str, str]:
    """Run one prompt, API first, then CLI.

    Returns:
        (raw output, method used: "api" or "cli")
    """
    response = await session.generate(prompt)
    if response and response.strip():
        return response, "api"
    return session.run_cli(prompt, timeout=job_config.cli_timeout), "cli"


def extract_reasoning(
    session: OllamaSession,
    prompt: str,
    output_file: Path,
    job_config: JobConfig,
) -> bool:
    """Ask for a step-by-step trace and store it.

    Returns:
        True if a usable trace was written; otherwise a placeholder is written
    """
    raw = session.run_cli(prompt + REASONING_SUFFIX, timeout=job_config.cli_timeout)

    thinking = extract_thinking(raw)
    if thinking and _write_cleaned(thinking, output_file):
        logger.info("[Batch]   Reasoning extracted (with thinking tags)")
        return True

    if not thinking and _write_cleaned(raw, output_file):
        logger.info("[Batch]   Reasoning output processed (no explicit tags)")
        return True

    output_file.write_text(NO_REASONING_TEXT, encoding="utf-8")
    return False


async def process_document(
    session: OllamaSession,
    document: Path,
    workspace: Workspace,
    job_config: JobConfig,
    log: RunLog,
) -> JobResult:
    """Process one prompt file into a JobResult."""
    filename = document.name
    log.technical(f"PROCESSING: {filename} ({time.strftime('%c')})")

    prompt = document.read_text(encoding="utf-8", errors="replace")
    if not prompt.strip():
        logger.warning(f"[Batch] {filename} is empty, skipping")
        return JobResult(filename=filename, status="skipped", error="Empty file")

    log.technical(f"  File size: {document.stat().st_size} bytes")
    output_file = workspace.result_path(document)
    start = time.monotonic()

    raw, method = await invoke_model(session, prompt, job_config)
    log.technical(
        "  API method successful" if method == "api" else "  API failed, using CLI method..."
    )

    cleaned_ok = _write_cleaned(raw, output_file)
    if cleaned_ok:
        log.technical(f"  {method.upper()} output cleaned")
    else:
        log.technical(f"  {method.upper()} method failed")
        output_file.write_text(failure_placeholder(filename, prompt), encoding="utf-8")

    reasoning = False
    if job_config.reasoning_enabled and workspace.reasoning is not None:
        logger.info("[Batch]   Extracting reasoning process...")
        log.technical("  Processing reasoning mode...")
        reasoning = extract_reasoning(
            session, prompt, workspace.reasoning_path(document), job_config
        )
        if not reasoning:
            log.technical("  Reasoning extraction failed")

    elapsed = time.monotonic() - start
    size = output_file.stat().st_size

    if cleaned_ok and size > RESULT_MIN_BYTES:
        if reasoning:
            reasoning_size = workspace.reasoning_path(document).stat().st_size
            log.technical(f"  REASONING: {reasoning_size} bytes of thinking process captured")
        return JobResult(
            filename=filename,
            status="success",
            output_bytes=size,
            elapsed=elapsed,
            reasoning=reasoning,
            result_file=str(output_file),
        )

    if cleaned_ok:
        # Cleaned, but too short to be a real answer
        output_file.write_text(
            f"Error: No valid output generated for {filename}\nPrompt was: {prompt}\n",
            encoding="utf-8",
        )
    return JobResult(
        filename=filename,
        status="failed",
        output_bytes=output_file.stat().st_size,
        elapsed=elapsed,
        reasoning=reasoning,
        result_file=str(output_file),
        error="no valid output generated",
    )


async def run_batch_stage(
    session: OllamaSession,
    workspace: Workspace,
    job_config: JobConfig,
    log: RunLog,
    on_result: Callable[[JobResult], None] | None = None,
) -> list[JobResult]:
    """Process every prompt in the input directory.

    Args:
        session: Ready Ollama session
        workspace: Batch directory tree
        job_config: Run configuration
        log: Summary/technical log writer
        on_result: Called after each document (e.g. to persist state)

    Returns:
        One JobResult per prompt, in processing order
    """
    documents = discover_documents(job_config.input_dir)
    total = len(documents)
    results: list[JobResult] = []

    logger.info(f"[Batch] Starting batch processing of {total} files")

    for i, document in enumerate(documents, start=1):
        logger.info(f"[Batch] Processing [{i}/{total}]: {document.name}")

        try:
            result = await process_document(session, document, workspace, job_config, log)
        except OSError as e:
            # A filesystem error on one document must not stop the batch
            logger.error(f"[Batch] {document.name} failed: {e}")
            output_file = workspace.result_path(document)
            output_file.write_text(
                f"Error: Processing failed for {document.name}\nReason: {e}\n",
                encoding="utf-8",
            )
            result = JobResult(
                filename=document.name,
                status="failed",
                result_file=str(output_file),
                error=str(e),
            )

        results.append(result)
        log.record(result)
        if on_result is not None:
            on_result(result)

        if result.status == "success":
            logger.info(f"[Batch] Completed {document.name} in {result.elapsed:.0f}s")
        elif result.status == "failed":
            logger.error(f"[Batch] Failed to process {document.name}")

        logger.info(f"[Batch] Progress: {i}/{total} files processed, {total - i} remaining")

    return results
