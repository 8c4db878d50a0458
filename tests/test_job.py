from __future__ import annotations

import pytest

from ollama_batch.job import (
    JobResult,
    count_results,
    create_run_state,
    format_run_status,
    load_state,
    record_result,
    save_state,
    update_stage,
)


@pytest.fixture
def state(tmp_path):
    return create_run_state(
        batch_id="20250101_120000",
        job_config={"model": "gemma3:1b", "context_size": 8192},
        devices={"visible_devices": "0", "count": 1},
        output_dir=tmp_path / "batch_20250101_120000",
    )


def test_initial_state(state):
    assert state["status"] == "pending"
    assert state["model"] == "gemma3:1b"
    assert list(state["stages"]) == ["batch", "synthesis"]
    assert all(s["status"] == "pending" for s in state["stages"].values())


def test_update_stage_tracks_timestamps(state, tmp_path):
    state_file = tmp_path / "job.json"

    update_stage(state, "batch", "running", state_file)
    assert state["stages"]["batch"]["started_at"] is not None
    assert state["current_stage"] == "batch"

    update_stage(state, "batch", "completed", state_file, stats={"processed": 2, "total": 3})
    assert state["stages"]["batch"]["completed_at"] is not None
    assert load_state(state_file)["stages"]["batch"]["stats"] == {"processed": 2, "total": 3}


def test_record_result_persists(state, tmp_path):
    state_file = tmp_path / "job.json"
    record_result(state, JobResult(filename="a.txt", status="success", output_bytes=42), state_file)

    saved = load_state(state_file)
    assert saved["results"][0]["filename"] == "a.txt"
    assert saved["results"][0]["output_bytes"] == 42


def test_load_missing_state(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_state(tmp_path / "job.json")


def test_count_results():
    results = [
        JobResult(filename="a.txt", status="success"),
        JobResult(filename="b.txt", status="failed"),
        JobResult(filename="c.txt", status="success"),
        JobResult(filename="d.txt", status="skipped"),
    ]
    assert count_results(results) == {"success": 2, "failed": 1, "skipped": 1}


def test_format_run_status(state, tmp_path):
    state_file = tmp_path / "job.json"
    update_stage(state, "batch", "completed", state_file, stats={"processed": 3, "total": 4})
    update_stage(state, "synthesis", "failed", state_file, error="no valid output")
    state["status"] = "completed"
    save_state(state, state_file)

    text = format_run_status(state)

    assert "Batch: 20250101_120000 - gemma3:1b" in text
    assert "● batch: completed (3/4)" in text
    assert "✗ synthesis: failed - no valid output" in text
