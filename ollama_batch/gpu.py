"""
GPU Detection

Queries nvidia-smi for the number of visible GPUs and reconciles it
with the requested count. The resulting device list is handed to the
Ollama server as CUDA_VISIBLE_DEVICES.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from typing import Literal

from .config import AUTO
from .errors import NoAcceleratorError

logger = logging.getLogger(__name__)

NVIDIA_SMI = "nvidia-smi"


@dataclass(frozen=True)
class DeviceSet:
    """Resolved GPU indices for one run."""

    indices: tuple[int, ...]
    detected: int
    requested: int | Literal["auto"]

    @property
    def count(self) -> int:
        return len(self.indices)

    @property
    def visible_devices(self) -> str:
        """Comma-joined indices, e.g. "0,1,2"."""
        return ",".join(str(i) for i in self.indices)


def detect_gpu_count() -> int:
    """Count GPUs reported by nvidia-smi.

    Returns:
        Number of detected GPUs (always >= 1)

    Raises:
        NoAcceleratorError: If nvidia-smi is missing, fails, or finds no GPUs
    """
    if shutil.which(NVIDIA_SMI) is None:
        raise NoAcceleratorError("nvidia-smi not found. CUDA drivers may not be installed.")

    try:
        result = subprocess.run(
            [NVIDIA_SMI, "--list-gpus"],
            capture_output=True,
            text=True,
            timeout=30,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        raise NoAcceleratorError(f"nvidia-smi query failed: {e}")

    if result.returncode != 0:
        raise NoAcceleratorError(f"nvidia-smi query failed: {result.stderr.strip()}")

    gpus = [line for line in result.stdout.splitlines() if line.startswith("GPU ")]
    if not gpus:
        raise NoAcceleratorError("No NVIDIA GPUs detected")

    logger.info(f"[GPU] Detected {len(gpus)} NVIDIA GPU(s)")
    for line in gpus:
        logger.info(f"[GPU]   {line}")
    return len(gpus)


def resolve_gpu_count(requested: int | Literal["auto"], available: int) -> int:
    """Reconcile the requested GPU count with what is physically present.

    Args:
        requested: Positive count or "auto"
        available: Detected GPU count

    Returns:
        Count to use, never more than available
    """
    if requested == AUTO:
        logger.info(f"[GPU] Auto-detected GPU count: {available}")
        return available

    if requested < 1:
        raise ValueError(f"GPU count must be at least 1, got {requested}")

    if requested > available:
        logger.warning(
            f"[GPU] Requested {requested} GPUs, but only {available} available. "
            f"Using {available}."
        )
        return available

    logger.info(f"[GPU] Using {requested} GPU(s) as specified")
    return requested


def resolve_devices(requested: int | Literal["auto"]) -> DeviceSet:
    """Detect GPUs and build the device set for this run."""
    available = detect_gpu_count()
    count = resolve_gpu_count(requested, available)
    return DeviceSet(indices=tuple(range(count)), detected=available, requested=requested)


def query_gpu_memory() -> list[str]:
    """Per-GPU memory status lines for the technical log.

    Informational only: returns an empty list if the query fails.
    """
    try:
        result = subprocess.run(
            [
                NVIDIA_SMI,
                "--query-gpu=index,name,memory.used,memory.free",
                "--format=csv,noheader,nounits",
            ],
            capture_output=True,
            text=True,
            timeout=30,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.warning(f"[GPU] Memory query failed: {e}")
        return []

    if result.returncode != 0:
        return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]
