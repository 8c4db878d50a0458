"""
Batch Job Configuration

Immutable run parameters, resolved once before a batch starts:
- Defaults from the environment (python-decouple)
- Optional YAML config file
- Command-line values (highest precedence)

The resolved config is serialized into the run's job.json sidecar and
into the Ollama server environment; it is never substituted into scripts.
"""

from __future__ import annotations

import getpass
import logging
import re
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Literal

import yaml
from decouple import config

logger = logging.getLogger(__name__)

AUTO: Literal["auto"] = "auto"

DEFAULT_MODEL = config("OLLAMA_BATCH_MODEL", default="gemma3:27b")
DEFAULT_CONTEXT_SIZE = config("OLLAMA_BATCH_CONTEXT_SIZE", default=8192, cast=int)
DEFAULT_CHAT_CONTEXT_SIZE = config("OLLAMA_CHAT_CONTEXT_SIZE", default=131072, cast=int)
DEFAULT_BASE_DIR = config("OLLAMA_BATCH_BASE_DIR", default=str(Path.home()))
DEFAULT_CONTAINER = config("OLLAMA_BATCH_CONTAINER", default="")
DEFAULT_HOST = config("OLLAMA_BATCH_HOST", default="127.0.0.1:11434")

DEFAULT_INPUT_DIR = Path("./input_prompts")
DEFAULT_OUTPUT_DIR = Path("./results")

# Presence of this file in the input directory enables synthesis
SYNTHESIS_TRIGGER = "synthesis_question.txt"

# Model families expected to emit an explicit thinking trace
REASONING_MODEL_PATTERN = re.compile(r"(deepseek-r1|cogito|reasoning|think)")


def is_reasoning_model(model: str) -> bool:
    """Check whether a model name belongs to a reasoning-capable family."""
    return REASONING_MODEL_PATTERN.search(model) is not None


def parse_gpu_count(value: int | str) -> int | Literal["auto"]:
    """Parse a GPU count argument ("auto" or a positive integer).

    Raises:
        ValueError: If the value is neither "auto" nor a positive integer
    """
    if isinstance(value, str):
        if value.strip().lower() == AUTO:
            return AUTO
        try:
            value = int(value)
        except ValueError:
            raise ValueError(f"GPU count must be 'auto' or an integer, got {value!r}")

    if value < 1:
        raise ValueError(f"GPU count must be at least 1, got {value}")
    return value


def default_user_dir() -> str:
    return f"{getpass.getuser()}_dev"


@dataclass(frozen=True)
class JobConfig:
    """Parameters of one batch run. Immutable once the run starts."""

    model: str = DEFAULT_MODEL
    input_dir: Path = DEFAULT_INPUT_DIR
    output_dir: Path = DEFAULT_OUTPUT_DIR
    gpu_count: int | str = AUTO
    context_size: int = DEFAULT_CONTEXT_SIZE
    reasoning: bool = False
    auto_confirm: bool = False
    user_dir: str = ""
    base_dir: Path = Path(DEFAULT_BASE_DIR)
    container_image: Path | None = Path(DEFAULT_CONTAINER) if DEFAULT_CONTAINER else None
    host: str = DEFAULT_HOST
    cli_timeout: float = 300.0
    synthesis_timeout: float = 600.0
    api_timeout: float = 300.0

    def __post_init__(self) -> None:
        if not self.model:
            raise ValueError("Model name must not be empty")
        if int(self.context_size) < 1:
            raise ValueError(f"Context size must be positive, got {self.context_size}")

        # Normalize loosely-typed inputs (CLI strings, YAML values)
        object.__setattr__(self, "context_size", int(self.context_size))
        object.__setattr__(self, "gpu_count", parse_gpu_count(self.gpu_count))
        object.__setattr__(self, "input_dir", Path(self.input_dir))
        object.__setattr__(self, "output_dir", Path(self.output_dir))
        object.__setattr__(self, "base_dir", Path(self.base_dir).expanduser())
        object.__setattr__(self, "user_dir", self.user_dir or default_user_dir())
        if self.container_image is not None:
            object.__setattr__(self, "container_image", Path(self.container_image))

    @property
    def storage_path(self) -> Path:
        """Ollama model store for this user."""
        return self.base_dir / self.user_dir / "ollama"

    @property
    def supports_reasoning(self) -> bool:
        return is_reasoning_model(self.model)

    @property
    def reasoning_enabled(self) -> bool:
        """Reasoning traces are produced only for reasoning-capable models."""
        return self.reasoning and self.supports_reasoning

    @property
    def derived_model(self) -> str:
        """Name of the model re-created with the requested context window."""
        return f"{self.model}_ctx{self.context_size}"

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable view for the run state sidecar."""
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            data[f.name] = str(value) if isinstance(value, Path) else value
        data["storage_path"] = str(self.storage_path)
        data["reasoning_enabled"] = self.reasoning_enabled
        return data


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Load JobConfig values from a YAML file.

    Args:
        path: YAML file with a top-level mapping of JobConfig field names

    Returns:
        Dict of field values

    Raises:
        ValueError: If the file is not a mapping or has unknown keys
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    known = {f.name for f in fields(JobConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown configuration keys in {path}: {', '.join(unknown)}")

    return data


def build_config(
    file_values: dict[str, Any] | None = None,
    **overrides: Any,
) -> JobConfig:
    """Merge config file values with command-line overrides.

    Overrides that are None are treated as "not given".
    """
    values = dict(file_values or {})
    values.update({k: v for k, v in overrides.items() if v is not None})

    job_config = JobConfig(**values)

    if job_config.reasoning and not job_config.supports_reasoning:
        logger.warning(
            f"[Config] Reasoning mode requested for {job_config.model}, which is not a "
            "known reasoning model; reasoning traces will not be generated"
        )

    return job_config
