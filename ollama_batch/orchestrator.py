"""
Pipeline Orchestrator

Coordinates one batch run:
1. GPU detection - resolve the device set
2. Workspace - create batch_<timestamp>/ and archive prompts
3. Ollama session - start server, ensure model, apply context window
4. Batch stage - every prompt file
5. Synthesis stage - only when synthesis_question.txt is present
6. Ollama session - stop (always, also on errors and signals)

Progress is persisted to batch_info/job.json after every document.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable

from .config import JobConfig
from .errors import FatalRunError
from .gpu import DeviceSet, query_gpu_memory, resolve_devices
from .job import (
    JobResult,
    create_run_state,
    record_result,
    save_state,
    update_stage,
)
from .ollama_controller import OllamaSession
from .run_log import RunLog
from .stages.batch import discover_documents, run_batch_stage
from .stages.synthesis import run_synthesis_stage
from .workspace import Workspace, build_workspace, make_timestamp

logger = logging.getLogger(__name__)

SessionFactory = Callable[[JobConfig, DeviceSet, Path], OllamaSession]


class PipelineOrchestrator:
    """Runs the batch pipeline for one JobConfig."""

    def __init__(
        self,
        job_config: JobConfig,
        session_factory: SessionFactory = OllamaSession,
        device_resolver: Callable[[Any], DeviceSet] = resolve_devices,
        timestamp: str | None = None,
    ):
        """Initialize orchestrator.

        Args:
            job_config: Run configuration
            session_factory: Builds the Ollama session (tests inject fakes)
            device_resolver: Resolves the GPU device set
            timestamp: Batch identifier (default: now)
        """
        self.config = job_config
        self.session_factory = session_factory
        self.device_resolver = device_resolver
        self.timestamp = timestamp or make_timestamp()
        self.workspace: Workspace | None = None

    async def run(self) -> dict[str, Any]:
        """Run the whole pipeline.

        Returns:
            Final run state dict

        Raises:
            FatalRunError: No GPU, server failed to start, or model pull failed
        """
        job_config = self.config

        devices = self.device_resolver(job_config.gpu_count)
        logger.info(f"[Pipeline] GPU configuration: {devices.visible_devices}")

        workspace = build_workspace(
            job_config.output_dir,
            self.timestamp,
            job_config.input_dir,
            reasoning_enabled=job_config.reasoning_enabled,
        )
        self.workspace = workspace

        state = create_run_state(
            batch_id=self.timestamp,
            job_config=job_config.to_dict(),
            devices={
                "visible_devices": devices.visible_devices,
                "count": devices.count,
                "detected": devices.detected,
                "requested": devices.requested,
            },
            output_dir=workspace.root,
        )
        state_file = workspace.state_file
        state["status"] = "running"
        save_state(state, state_file)

        log = RunLog(workspace)
        session = self.session_factory(job_config, devices, workspace.server_log)
        session.install_signal_handlers()

        try:
            await session.start()
            await session.ensure_model()
            state["model"] = session.apply_context_window()
            save_state(state, state_file)

            documents = discover_documents(job_config.input_dir)
            log.write_header(
                job_config,
                devices,
                active_model=session.model,
                environment=session.environment,
                document_count=len(documents),
                server_pid=session.pid,
                gpu_memory=query_gpu_memory(),
            )

            results = await self._run_batch(session, workspace, log, state)

            if workspace.synthesis is not None:
                self._run_synthesis(session, workspace, log, state, results)
            else:
                update_stage(state, "synthesis", "skipped", state_file)

            state["status"] = "completed"
            save_state(state, state_file)
            logger.info("[Pipeline] Batch completed")

        except FatalRunError as e:
            logger.error(f"[Pipeline] Run aborted: {e}")
            state["status"] = "failed"
            state["error"] = str(e)
            save_state(state, state_file)
            raise

        except BaseException as e:
            # Interrupted runs are recorded as failed too
            logger.error(f"[Pipeline] Run interrupted: {type(e).__name__}: {e}")
            state["status"] = "failed"
            state["error"] = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
            save_state(state, state_file)
            raise

        finally:
            session.stop()
            session.restore_signal_handlers()

        return state

    async def _run_batch(
        self,
        session: OllamaSession,
        workspace: Workspace,
        log: RunLog,
        state: dict[str, Any],
    ) -> list[JobResult]:
        state_file = workspace.state_file
        update_stage(state, "batch", "running", state_file)

        start = time.monotonic()
        results = await run_batch_stage(
            session,
            workspace,
            self.config,
            log,
            on_result=lambda result: record_result(state, result, state_file),
        )
        duration = time.monotonic() - start

        reasoning_files = None
        if workspace.reasoning is not None:
            reasoning_files = len(list(workspace.reasoning.glob("*_thinking.txt")))

        log.write_footer(results, duration, reasoning_files, gpu_memory=query_gpu_memory())

        stats = {
            "total": len(results),
            "processed": sum(r.status == "success" for r in results),
            "failed": sum(r.status == "failed" for r in results),
            "skipped": sum(r.status == "skipped" for r in results),
            "duration": round(duration, 1),
        }
        update_stage(state, "batch", "completed", state_file, stats=stats)
        logger.info(
            f"[Pipeline] Batch stage: {stats['processed']} succeeded, "
            f"{stats['failed']} failed, {stats['skipped']} skipped in {duration:.0f}s"
        )
        return results

    def _run_synthesis(
        self,
        session: OllamaSession,
        workspace: Workspace,
        log: RunLog,
        state: dict[str, Any],
        results: list[JobResult],
    ) -> None:
        state_file = workspace.state_file
        update_stage(state, "synthesis", "running", state_file)

        synthesis = run_synthesis_stage(session, workspace, self.config, results)
        if synthesis is None:
            update_stage(state, "synthesis", "skipped", state_file)
            return

        log.record_synthesis(synthesis)
        state["synthesis"] = synthesis.to_dict()
        update_stage(
            state,
            "synthesis",
            "completed" if synthesis.status == "success" else "failed",
            state_file,
            stats={"files": len(synthesis.referenced), "estimated_tokens": synthesis.estimated_tokens},
            error=None if synthesis.status == "success" else "no valid output",
        )
