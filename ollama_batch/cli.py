"""
Ollama Batch CLI

Command-line entry points for batch processing and interactive sessions.

Usage:
    ollama-batch [MODEL] [INPUT_DIR] [OUTPUT_DIR] [GPUS|auto] [CTX] [-r] [-s] [-u DIR]
    ollama-chat [MODEL] [GPUS|auto] [CTX] [-s] [-u DIR]
    ollama-batch-status BATCH_DIR

Examples:
    ollama-batch gemma3:1b ./prompts ./results 1 8192
    ollama-batch deepseek-r1:8b ./data ./output 2 32768 -r
    ollama-batch llama3.3:70b ./research ./analysis 6 32768 -s
    ollama-chat gemma3:27b 2 131072
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any

import click

from .config import (
    DEFAULT_CHAT_CONTEXT_SIZE,
    SYNTHESIS_TRIGGER,
    JobConfig,
    build_config,
    load_config_file,
)
from .errors import FatalRunError, ServerStartError
from .gpu import resolve_devices
from .job import format_run_status, load_state
from .ollama_controller import OllamaSession
from .orchestrator import PipelineOrchestrator

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

CONTEXT_SETTINGS = {"help_option_names": ["-h", "--help"]}


def _load_file_values(config_file: Path | None) -> dict[str, Any]:
    if config_file is None:
        return {}
    try:
        return load_config_file(config_file)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--config")


def _make_config(file_values: dict[str, Any], **overrides: Any) -> JobConfig:
    try:
        return build_config(file_values, **overrides)
    except ValueError as e:
        raise click.UsageError(str(e))


def _report_fatal(error: FatalRunError) -> None:
    click.echo(f"Error: {error}", err=True)
    if isinstance(error, ServerStartError) and error.server_log:
        click.echo("Server log:", err=True)
        click.echo(error.server_log, err=True)


@click.command(context_settings=CONTEXT_SETTINGS)
@click.argument("model", required=False)
@click.argument("input_dir", required=False, type=click.Path(path_type=Path))
@click.argument("output_dir", required=False, type=click.Path(path_type=Path))
@click.argument("gpu_count", required=False)
@click.argument("context_size", required=False, type=int)
@click.option("-r", "--reasoning", is_flag=True, help="Enable reasoning mode for supported models")
@click.option("-s", "--skip", "auto_confirm", is_flag=True, help="Skip all confirmations (auto-run mode)")
@click.option("-u", "--user-dir", help="Custom user subdirectory for model storage")
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML file with default settings",
)
def batch(
    model: str | None,
    input_dir: Path | None,
    output_dir: Path | None,
    gpu_count: str | None,
    context_size: int | None,
    reasoning: bool,
    auto_confirm: bool,
    user_dir: str | None,
    config_file: Path | None,
) -> None:
    """Run every .txt prompt in INPUT_DIR through an Ollama model.

    \b
    MODEL         Ollama model name (default: gemma3:27b)
    INPUT_DIR     Directory with .txt prompt files (default: ./input_prompts)
    OUTPUT_DIR    Output directory (default: ./results)
    GPU_COUNT     Number of GPUs to use, or "auto" (default: auto)
    CONTEXT_SIZE  Context window size in tokens (default: 8192)

    Place a synthesis_question.txt in INPUT_DIR to get a meta-analysis
    across all results after the batch completes.
    """
    job_config = _make_config(
        _load_file_values(config_file),
        model=model,
        input_dir=input_dir,
        output_dir=output_dir,
        gpu_count=gpu_count,
        context_size=context_size,
        reasoning=reasoning or None,
        auto_confirm=auto_confirm or None,
        user_dir=user_dir,
    )

    if not job_config.input_dir.is_dir():
        click.echo(f"Error: Input directory {job_config.input_dir} does not exist", err=True)
        sys.exit(1)

    prompts = sorted(job_config.input_dir.glob("*.txt"))
    if not prompts:
        click.echo(f"Error: No .txt files found in {job_config.input_dir}", err=True)
        sys.exit(1)

    _print_plan(job_config, prompts)

    if not job_config.auto_confirm:
        click.confirm("Start batch processing?", default=True, abort=True)

    job_config.output_dir.mkdir(parents=True, exist_ok=True)
    orchestrator = PipelineOrchestrator(job_config)

    try:
        state = asyncio.run(orchestrator.run())
    except FatalRunError as e:
        _report_fatal(e)
        sys.exit(1)

    click.echo()
    click.echo(format_run_status(state))
    _print_outputs(orchestrator)


def _print_plan(job_config: JobConfig, prompts: list[Path]) -> None:
    """Show configuration and what the run will create."""
    click.echo("Configuration:")
    click.echo(f"  Model: {job_config.model}")
    click.echo(f"  Context size: {job_config.context_size} tokens")
    click.echo(f"  Input directory: {job_config.input_dir}")
    click.echo(f"  Output directory: {job_config.output_dir}")
    click.echo(f"  GPUs: {job_config.gpu_count}")
    click.echo(f"  Reasoning mode: {str(job_config.reasoning).lower()}")
    click.echo(f"  Model storage: {job_config.storage_path}")
    click.echo()

    click.echo(f"Found {len(prompts)} .txt files:")
    for prompt in prompts[:5]:
        click.echo(f"  {prompt.name} ({prompt.stat().st_size} bytes)")
    if len(prompts) > 5:
        click.echo(f"  ... and {len(prompts) - 5} more")
    click.echo()

    click.echo("This will create:")
    click.echo(f"  {job_config.output_dir}/batch_<timestamp>/")
    click.echo("    batch_info/ (summary, technical log, job.json)")
    click.echo("    analysis_outputs/ (individual results)")
    click.echo("    prompts_archive/ (archived prompts)")
    if (job_config.input_dir / SYNTHESIS_TRIGGER).is_file():
        click.echo("    synthesis_analysis/ (meta-analysis)")
    if job_config.reasoning_enabled:
        click.echo("    reasoning_outputs/ (thinking processes)")
    click.echo()


def _print_outputs(orchestrator: PipelineOrchestrator) -> None:
    workspace = orchestrator.workspace
    if workspace is None:
        return

    click.echo()
    click.echo(f"Batch directory: {workspace.root}")
    click.echo(f"Summary: {workspace.summary_file}")
    click.echo(f"Technical log: {workspace.technical_log_file}")
    click.echo(f"Results: {workspace.analysis}")
    click.echo(f"Prompts: {workspace.prompts_archive}")
    if workspace.synthesis is not None:
        click.echo(f"Synthesis: {workspace.synthesis}")
    if workspace.reasoning is not None:
        click.echo(f"Reasoning: {workspace.reasoning}")


@click.command(context_settings=CONTEXT_SETTINGS)
@click.argument("model", required=False)
@click.argument("gpu_count", required=False)
@click.argument("context_size", required=False, type=int)
@click.option("-s", "--skip", "auto_confirm", is_flag=True, help="Skip all confirmations")
@click.option("-u", "--user-dir", help="Custom user subdirectory for model storage")
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML file with default settings",
)
def chat(
    model: str | None,
    gpu_count: str | None,
    context_size: int | None,
    auto_confirm: bool,
    user_dir: str | None,
    config_file: Path | None,
) -> None:
    """Start an Ollama server and open an interactive shell.

    \b
    MODEL         Ollama model name (default: gemma3:27b)
    GPU_COUNT     Number of GPUs to use, or "auto" (default: auto)
    CONTEXT_SIZE  Context window size in tokens (default: 131072)

    The server is stopped when the shell exits or on Ctrl+C.
    """
    file_values = _load_file_values(config_file)
    file_values.setdefault("context_size", DEFAULT_CHAT_CONTEXT_SIZE)
    job_config = _make_config(
        file_values,
        model=model,
        gpu_count=gpu_count,
        context_size=context_size,
        auto_confirm=auto_confirm or None,
        user_dir=user_dir,
    )

    click.echo(f"Model: {job_config.model} (with {job_config.context_size} token context)")
    click.echo(f"Storage: {job_config.storage_path}")
    if job_config.container_image is not None:
        click.echo(f"Container: {job_config.container_image}")

    if not job_config.auto_confirm:
        click.confirm("Start interactive session?", default=True, abort=True)

    try:
        devices = resolve_devices(job_config.gpu_count)
    except FatalRunError as e:
        _report_fatal(e)
        sys.exit(1)

    session = OllamaSession(
        job_config, devices, job_config.storage_path / "logs" / "ollama_interactive.log"
    )
    session.install_signal_handlers()

    async def prepare() -> None:
        await session.start()
        await session.ensure_model()
        session.apply_context_window()

    try:
        asyncio.run(prepare())

        click.echo()
        click.echo(f"Interactive session ready: {session.model}")
        click.echo(f"  ollama run {session.model}    - Start chat")
        click.echo("  ollama list                 - List models")
        click.echo(f"  ollama show {session.model}   - Model info")
        click.echo("  exit                        - Exit session")
        click.echo()

        exit_code = session.interactive_shell()
    except FatalRunError as e:
        _report_fatal(e)
        sys.exit(1)
    finally:
        session.stop()
        session.restore_signal_handlers()

    click.echo("Session ended.")
    sys.exit(exit_code)


@click.command(context_settings=CONTEXT_SETTINGS)
@click.argument("batch_dir", type=click.Path(file_okay=False, path_type=Path))
def status(batch_dir: Path) -> None:
    """Show the status of a batch run.

    BATCH_DIR: A batch_<timestamp> directory created by ollama-batch.
    """
    try:
        state = load_state(batch_dir / "batch_info" / "job.json")
    except FileNotFoundError:
        click.echo(f"Error: Batch not found: {batch_dir}", err=True)
        sys.exit(1)

    click.echo(format_run_status(state))

    results = state["results"]
    if results:
        click.echo()
        click.echo(f"Documents ({len(results)}):")
        for result in results:
            line = f"  {result['status']:<8} {result['filename']}"
            if result["error"]:
                line += f" - {result['error']}"
            click.echo(line)


def main() -> None:
    """Entry point for batch processing."""
    batch()


def chat_main() -> None:
    """Entry point for interactive sessions."""
    chat()


def status_main() -> None:
    """Entry point for batch status."""
    status()


if __name__ == "__main__":
    main()
