from __future__ import annotations

from conftest import FakeSession, write_prompts

from ollama_batch.job import JobResult
from ollama_batch.stages.synthesis import (
    build_synthesis_prompt,
    estimate_tokens,
    read_question,
    run_synthesis_stage,
)
from ollama_batch.workspace import build_workspace

SYNTHESIS = "Across all three documents, nitrogen levels rise after rotation."


def setup_run(make_config, question="What do the soil reports have in common?", **config):
    job_config = make_config(**config)
    prompts = {"a.txt": "Analyze report A", "b.txt": "Analyze report B"}
    if question is not None:
        prompts["synthesis_question.txt"] = question
    write_prompts(job_config.input_dir, prompts)
    workspace = build_workspace(job_config.output_dir, "20250101_120000", job_config.input_dir)

    results = []
    for name, text in [("a.txt", "Report A finds high nitrogen."), ("b.txt", "Report B finds low pH.")]:
        result_file = workspace.result_path(job_config.input_dir / name)
        result_file.write_text(text + "\n")
        results.append(JobResult(filename=name, status="success", result_file=str(result_file)))
    results.append(JobResult(filename="c.txt", status="skipped", error="Empty file"))
    return job_config, workspace, results


def test_build_synthesis_prompt_layout():
    prompt = build_synthesis_prompt("Common themes?", [("a_result.txt", "Alpha\n"), ("b_result.txt", "Beta")])

    assert prompt.startswith("SYNTHESIS QUESTION: Common themes?\n")
    assert "ANALYSIS RESULTS TO SYNTHESIZE:\n================================\n" in prompt
    assert "--- RESULT 1: a_result.txt ---\nAlpha\n\n--- END RESULT 1 ---" in prompt
    assert "--- RESULT 2: b_result.txt ---\nBeta\n\n--- END RESULT 2 ---" in prompt
    assert prompt.index("RESULT 1") < prompt.index("RESULT 2")
    assert prompt.rstrip().endswith("addresses the original question: Common themes?")


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert estimate_tokens("x" * 4000) == 1000


def test_read_question(tmp_path):
    assert read_question(tmp_path) is None
    (tmp_path / "synthesis_question.txt").write_text("  Why?\n")
    assert read_question(tmp_path) == "Why?"


def test_synthesis_success(make_config):
    job_config, workspace, results = setup_run(make_config)
    session = FakeSession(job_config, cli=lambda prompt: SYNTHESIS + "\n")

    synthesis = run_synthesis_stage(session, workspace, job_config, results)

    assert synthesis.status == "success"
    assert synthesis.referenced == ("a.txt", "b.txt")
    assert synthesis.question == "What do the soil reports have in common?"
    assert workspace.synthesis_output.read_text() == SYNTHESIS + "\n"

    phase, prompt = session.cli_calls[0]
    assert phase == "synthesizing"
    assert "Report A finds high nitrogen." in prompt
    assert "Report B finds low pH." in prompt
    assert synthesis.estimated_tokens == estimate_tokens(prompt)
    assert not synthesis.over_budget
    assert not list(workspace.synthesis.glob("*.raw"))


def test_synthesis_over_budget_still_runs(make_config, caplog):
    job_config, workspace, results = setup_run(make_config, context_size=1010)
    session = FakeSession(job_config, cli=lambda prompt: SYNTHESIS)

    with caplog.at_level("WARNING"):
        synthesis = run_synthesis_stage(session, workspace, job_config, results)

    assert synthesis.over_budget
    assert synthesis.status == "success"
    assert "may exceed the context window" in caplog.text


def test_synthesis_failure_writes_placeholder(make_config):
    job_config, workspace, results = setup_run(make_config)
    session = FakeSession(job_config, cli=lambda prompt: "\x1b[K⠋")

    synthesis = run_synthesis_stage(session, workspace, job_config, results)

    assert synthesis.status == "failed"
    text = workspace.synthesis_output.read_text()
    assert text.startswith("Error: Synthesis produced no valid output")
    assert synthesis.output_bytes == workspace.synthesis_output.stat().st_size


def test_empty_question_skips_synthesis(make_config):
    job_config, workspace, results = setup_run(make_config, question="   \n")
    session = FakeSession(job_config, cli=lambda prompt: SYNTHESIS)

    assert run_synthesis_stage(session, workspace, job_config, results) is None
    assert session.cli_calls == []
