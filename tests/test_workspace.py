from __future__ import annotations

from pathlib import Path

import pytest

from conftest import write_prompts
from ollama_batch.workspace import build_workspace, make_timestamp


def test_make_timestamp_format():
    stamp = make_timestamp()
    assert len(stamp) == 15 and stamp[8] == "_"


def test_build_workspace_creates_base_tree(tmp_path: Path):
    input_dir = tmp_path / "in"
    write_prompts(input_dir, {"a.txt": "alpha", "b.txt": "beta", "notes.md": "ignored"})

    ws = build_workspace(tmp_path / "out", "20250101_120000", input_dir)

    assert ws.root == tmp_path / "out" / "batch_20250101_120000"
    assert ws.batch_info.is_dir()
    assert ws.analysis.is_dir()
    assert ws.prompts_archive.is_dir()
    assert ws.synthesis is None
    assert ws.reasoning is None
    assert not (ws.root / "synthesis_analysis").exists()
    assert not (ws.root / "reasoning_outputs").exists()
    assert sorted(p.name for p in ws.prompts_archive.iterdir()) == ["a.txt", "b.txt"]


def test_build_workspace_optional_folders(tmp_path: Path):
    input_dir = tmp_path / "in"
    write_prompts(input_dir, {"a.txt": "alpha", "synthesis_question.txt": "What links them?"})

    ws = build_workspace(tmp_path / "out", "20250101_120000", input_dir, reasoning_enabled=True)

    assert ws.synthesis.is_dir()
    assert ws.reasoning.is_dir()
    assert ws.synthesis_output.name == "SYNTHESIS_FINAL_ANALYSIS.txt"
    assert (ws.prompts_archive / "synthesis_question.txt").exists()


def test_archive_reflects_pre_run_state(tmp_path: Path):
    input_dir = tmp_path / "in"
    write_prompts(input_dir, {"a.txt": "original"})

    ws = build_workspace(tmp_path / "out", "20250101_120000", input_dir)
    (input_dir / "a.txt").write_text("changed later")

    assert (ws.prompts_archive / "a.txt").read_text() == "original"


def test_workspace_paths(tmp_path: Path):
    input_dir = tmp_path / "in"
    write_prompts(input_dir, {"a.txt": "alpha"})
    ws = build_workspace(tmp_path / "out", "20250101_120000", input_dir)

    assert ws.result_path(Path("soil.txt")).name == "soil_result.txt"
    assert ws.summary_file.name == "batch_summary_20250101_120000.txt"
    assert ws.technical_log_file.name == "technical_log_20250101_120000.txt"
    with pytest.raises(ValueError):
        ws.reasoning_path(Path("soil.txt"))
    with pytest.raises(ValueError):
        ws.synthesis_output
