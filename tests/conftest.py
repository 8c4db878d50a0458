from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

import pytest

from ollama_batch.config import JobConfig
from ollama_batch.gpu import DeviceSet


# -----------------------------
# Test doubles
# -----------------------------
class FakeSession:
    """Stands in for OllamaSession; no processes, no HTTP."""

    def __init__(
        self,
        job_config: JobConfig,
        api: Optional[Callable[[str], Optional[str]]] = None,
        cli: Optional[Callable[[str], str]] = None,
    ):
        self.config = job_config
        self.model = job_config.model
        self.environment = {"CUDA_VISIBLE_DEVICES": "0", "TERM": "dumb"}
        self.pid = 4242
        self.state = "uninitialized"
        self._api = api or (lambda prompt: None)
        self._cli = cli or (lambda prompt: "")
        self.api_prompts: list[str] = []
        self.cli_calls: list[tuple[str, str]] = []
        self.events: list[str] = []

    def install_signal_handlers(self) -> None:
        self.events.append("signals")

    def restore_signal_handlers(self) -> None:
        self.events.append("restore")

    async def start(self) -> None:
        self.events.append("start")
        self.state = "ready"

    async def ensure_model(self) -> None:
        self.events.append("ensure_model")

    def apply_context_window(self) -> str:
        self.events.append("apply_context_window")
        self.model = self.config.derived_model
        return self.model

    async def generate(self, prompt: str) -> Optional[str]:
        self.api_prompts.append(prompt)
        return self._api(prompt)

    def run_cli(self, prompt: str, timeout: float, phase: str = "invoking") -> str:
        self.cli_calls.append((phase, prompt))
        return self._cli(prompt)

    def stop(self) -> None:
        self.events.append("stop")
        self.state = "stopped"


# -----------------------------
# Helpers
# -----------------------------
def write_prompts(input_dir: Path, prompts: dict[str, str]) -> None:
    input_dir.mkdir(parents=True, exist_ok=True)
    for name, text in prompts.items():
        (input_dir / name).write_text(text, encoding="utf-8")


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., JobConfig]:
    def _make(**overrides) -> JobConfig:
        values = {
            "model": "gemma3:1b",
            "input_dir": tmp_path / "prompts",
            "output_dir": tmp_path / "results",
            "base_dir": tmp_path / "base",
            "user_dir": "tester_dev",
            "gpu_count": 1,
            "context_size": 8192,
            "auto_confirm": True,
        }
        values.update(overrides)
        return JobConfig(**values)

    return _make


@pytest.fixture
def devices() -> DeviceSet:
    return DeviceSet(indices=(0, 1), detected=4, requested=2)
