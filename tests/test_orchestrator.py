from __future__ import annotations

import asyncio

import pytest
from conftest import FakeSession, write_prompts

from ollama_batch import orchestrator as orchestrator_module
from ollama_batch.errors import NoAcceleratorError, ServerStartError
from ollama_batch.gpu import DeviceSet
from ollama_batch.job import load_state
from ollama_batch.orchestrator import PipelineOrchestrator

ANSWER = "A detailed answer that is comfortably longer than twenty bytes."
SYNTHESIS = "All documents agree on the main finding."


@pytest.fixture(autouse=True)
def no_gpu_query(monkeypatch):
    monkeypatch.setattr(orchestrator_module, "query_gpu_memory", lambda: ["0, NVIDIA A100, 1024, 39936"])


def make_orchestrator(job_config, session):
    return PipelineOrchestrator(
        job_config,
        session_factory=lambda cfg, devices, log_path: session,
        device_resolver=lambda requested: DeviceSet(indices=(0,), detected=1, requested=1),
        timestamp="20250101_120000",
    )


def test_batch_with_synthesis(make_config):
    job_config = make_config()
    write_prompts(
        job_config.input_dir,
        {
            "a.txt": "Analyze A",
            "b.txt": "Analyze B",
            "c.txt": "Analyze C",
            "synthesis_question.txt": "What do they share?",
        },
    )
    session = FakeSession(job_config, api=lambda prompt: ANSWER, cli=lambda prompt: SYNTHESIS)
    orchestrator = make_orchestrator(job_config, session)

    state = asyncio.run(orchestrator.run())
    workspace = orchestrator.workspace

    assert state["status"] == "completed"
    assert state["model"] == "gemma3:1b_ctx8192"
    assert sorted(p.name for p in workspace.analysis.iterdir()) == [
        "a_result.txt",
        "b_result.txt",
        "c_result.txt",
    ]
    assert workspace.reasoning is None
    assert workspace.synthesis_output.read_text() == SYNTHESIS + "\n"
    assert state["synthesis"]["referenced"] == ["a.txt", "b.txt", "c.txt"]
    assert state["stages"]["batch"]["stats"]["processed"] == 3
    assert state["stages"]["synthesis"]["status"] == "completed"

    # Archive holds the trigger too
    assert (workspace.prompts_archive / "synthesis_question.txt").is_file()

    assert session.events[:4] == ["signals", "start", "ensure_model", "apply_context_window"]
    assert session.events[-2:] == ["stop", "restore"]

    summary = workspace.summary_file.read_text()
    assert "Total files processed: 3" in summary
    assert "SYNTHESIS ANALYSIS" in summary
    assert load_state(workspace.state_file) == state


def test_empty_document_is_skipped(make_config):
    job_config = make_config()
    write_prompts(job_config.input_dir, {"empty.txt": ""})
    session = FakeSession(job_config, api=lambda prompt: ANSWER)
    orchestrator = make_orchestrator(job_config, session)

    state = asyncio.run(orchestrator.run())

    assert state["status"] == "completed"
    assert list(orchestrator.workspace.analysis.iterdir()) == []
    assert state["stages"]["batch"]["stats"]["skipped"] == 1
    assert state["stages"]["synthesis"]["status"] == "skipped"
    assert orchestrator.workspace.synthesis is None
    assert "Skipped files: 1" in orchestrator.workspace.summary_file.read_text()


def test_reasoning_run_creates_traces(make_config):
    job_config = make_config(model="deepseek-r1:8b", reasoning=True)
    write_prompts(job_config.input_dir, {"a.txt": "Why?"})
    session = FakeSession(
        job_config,
        api=lambda prompt: ANSWER,
        cli=lambda prompt: "<thinking>Consider both cohorts.</thinking> Done.",
    )
    orchestrator = make_orchestrator(job_config, session)

    state = asyncio.run(orchestrator.run())

    assert state["results"][0]["reasoning"] is True
    assert (orchestrator.workspace.reasoning / "a_thinking.txt").is_file()
    assert "Reasoning files generated: 1" in orchestrator.workspace.summary_file.read_text()


def test_server_failure_marks_run_failed_and_stops(make_config):
    job_config = make_config()
    write_prompts(job_config.input_dir, {"a.txt": "Analyze A"})

    class FailingSession(FakeSession):
        async def start(self):
            self.events.append("start")
            raise ServerStartError("Ollama server exited with code 1 during startup", server_log="bind: address already in use")

    session = FailingSession(job_config)
    orchestrator = make_orchestrator(job_config, session)

    with pytest.raises(ServerStartError):
        asyncio.run(orchestrator.run())

    state = load_state(orchestrator.workspace.state_file)
    assert state["status"] == "failed"
    assert "exited with code 1" in state["error"]
    assert session.events[-2:] == ["stop", "restore"]
    assert list(orchestrator.workspace.analysis.iterdir()) == []


def test_no_accelerator_aborts_before_workspace(make_config):
    job_config = make_config()
    write_prompts(job_config.input_dir, {"a.txt": "Analyze A"})

    def no_gpu(requested):
        raise NoAcceleratorError("No NVIDIA GPUs detected")

    orchestrator = PipelineOrchestrator(job_config, device_resolver=no_gpu)

    with pytest.raises(NoAcceleratorError):
        asyncio.run(orchestrator.run())

    assert orchestrator.workspace is None
    assert not job_config.output_dir.exists()


@pytest.mark.parametrize(
    "error, recorded",
    [
        (KeyboardInterrupt(), "KeyboardInterrupt"),
        (RuntimeError("codec failure"), "RuntimeError: codec failure"),
    ],
)
def test_interrupted_run_is_recorded_as_failed(make_config, error, recorded):
    job_config = make_config()
    write_prompts(job_config.input_dir, {"a.txt": "Analyze A", "b.txt": "Analyze B"})

    def interrupt(prompt):
        raise error

    session = FakeSession(job_config, api=interrupt)
    orchestrator = make_orchestrator(job_config, session)

    with pytest.raises(type(error)):
        asyncio.run(orchestrator.run())

    state = load_state(orchestrator.workspace.state_file)
    assert state["status"] == "failed"
    assert state["error"] == recorded
    assert session.events[-2:] == ["stop", "restore"]
