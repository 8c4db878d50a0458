"""Errors that abort a batch run."""

from __future__ import annotations


class FatalRunError(RuntimeError):
    """Resource acquisition failed; the run cannot continue."""


class NoAcceleratorError(FatalRunError):
    """nvidia-smi is missing or reports no GPUs."""


class ServerStartError(FatalRunError):
    """The Ollama server exited or never became ready."""

    def __init__(self, message: str, server_log: str = ""):
        super().__init__(message)
        self.server_log = server_log


class ModelPullError(FatalRunError):
    """The requested model could not be downloaded."""
