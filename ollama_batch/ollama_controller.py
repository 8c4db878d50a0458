"""
Ollama Server Controller

Owns one `ollama serve` process for the duration of a run:
start with a readiness probe, make sure the model is present, derive a
model with the requested context window, run inference (HTTP API or
CLI), and stop the server on exit or signal.

When a container image is configured, every ollama command runs via
`apptainer exec --nv --cleanenv` with the environment passed as --env.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import signal
import subprocess
from pathlib import Path
from typing import Literal

import httpx

from .config import JobConfig
from .errors import ModelPullError, ServerStartError
from .gpu import DeviceSet

logger = logging.getLogger(__name__)

SessionState = Literal["uninitialized", "starting", "ready", "invoking", "synthesizing", "stopped"]

# Offload every layer to GPU
GPU_LAYERS = "999999"
CONTAINER_STORE = "/root/.ollama"
STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)
UNSAFE_FILENAME_CHARS = re.compile(r"[^\w.-]")


def build_environment(job_config: JobConfig, devices: DeviceSet) -> dict[str, str]:
    """Environment for the server and CLI calls.

    Pins the device set and asks for plain, uncolored, history-free output.
    """
    models_dir = (
        f"{CONTAINER_STORE}/models"
        if job_config.container_image is not None
        else str(job_config.storage_path / "models")
    )
    return {
        "CUDA_VISIBLE_DEVICES": devices.visible_devices,
        "OLLAMA_NUM_GPU": str(devices.count),
        "OLLAMA_GPU_LAYERS": GPU_LAYERS,
        "OLLAMA_HOST": job_config.host,
        "OLLAMA_MODELS": models_dir,
        "OLLAMA_NOHISTORY": "1",
        "OLLAMA_DEBUG": "0",
        "TERM": "dumb",
        "NO_COLOR": "1",
    }


def model_matches(requested: str, available: str) -> bool:
    """Compare model names, treating a missing tag as ":latest"."""

    def normalize(name: str) -> str:
        return name if ":" in name else f"{name}:latest"

    return normalize(requested) == normalize(available)


class OllamaSession:
    """Lifecycle of one Ollama server process."""

    def __init__(
        self,
        job_config: JobConfig,
        devices: DeviceSet,
        log_path: Path,
        transport: httpx.AsyncBaseTransport | None = None,
        readiness_attempts: int = 8,
        readiness_delay: float = 0.5,
    ):
        """Initialize session.

        Args:
            job_config: Run configuration
            devices: Resolved GPU device set
            log_path: File receiving the server's stdout/stderr
            transport: Optional httpx transport (tests)
            readiness_attempts: Health probes before giving up
            readiness_delay: First backoff delay in seconds (doubles per attempt)
        """
        self.config = job_config
        self.devices = devices
        self.log_path = Path(log_path)
        self.base_url = f"http://{job_config.host}"
        self.environment = build_environment(job_config, devices)
        self.model = job_config.model
        self.state: SessionState = "uninitialized"

        self._transport = transport
        self._readiness_attempts = readiness_attempts
        self._readiness_delay = readiness_delay
        self._process: subprocess.Popen | None = None
        self._log_handle = None
        self._previous_handlers: dict[int, object] = {}

    # ------------------------------------------------------------------
    # Process plumbing
    # ------------------------------------------------------------------

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    def command(self, *argv: str) -> list[str]:
        """Wrap a command for the configured runtime (host or container)."""
        image = self.config.container_image
        if image is None:
            return list(argv)

        wrapped = ["apptainer", "exec", "--nv", "--cleanenv"]
        for key, value in self.environment.items():
            wrapped += ["--env", f"{key}={value}"]
        wrapped += ["-B", f"{self.config.storage_path}:{CONTAINER_STORE}", str(image)]
        return wrapped + list(argv)

    def process_env(self) -> dict[str, str]:
        """Environment for spawned processes."""
        return {**os.environ, **self.environment}

    def _store_path(self, path: Path) -> str:
        """Path of a file in the storage dir as seen by ollama."""
        if self.config.container_image is None:
            return str(path)
        return f"{CONTAINER_STORE}/{path.relative_to(self.config.storage_path)}"

    def _read_server_log(self) -> str:
        if self._log_handle is not None:
            self._log_handle.flush()
        try:
            return self.log_path.read_text(errors="replace")
        except OSError:
            return ""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start `ollama serve` and wait until it answers.

        Raises:
            ServerStartError: If the server exits or never becomes healthy
        """
        self.state = "starting"
        self.config.storage_path.joinpath("models").mkdir(parents=True, exist_ok=True)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"[Ollama] Starting server on {self.config.host}")
        logger.info(f"[Ollama]   CUDA_VISIBLE_DEVICES: {self.devices.visible_devices}")
        logger.info(f"[Ollama]   OLLAMA_NUM_GPU: {self.devices.count}")

        self._log_handle = open(self.log_path, "w")
        try:
            self._process = subprocess.Popen(
                self.command("ollama", "serve"),
                stdout=self._log_handle,
                stderr=subprocess.STDOUT,
                env=self.process_env(),
            )
        except OSError as e:
            self.stop()
            raise ServerStartError(f"Could not launch ollama: {e}")

        logger.info(f"[Ollama] Server PID: {self._process.pid}")

        try:
            await self.wait_until_ready()
        except ServerStartError:
            self.stop()
            raise

        self.state = "ready"
        logger.info("[Ollama] Server started successfully")

    async def is_healthy(self) -> bool:
        """Check if the server responds."""
        try:
            async with httpx.AsyncClient(timeout=5.0, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}/api/version")
                return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def wait_until_ready(self) -> None:
        """Poll the server with exponential backoff.

        Raises:
            ServerStartError: If the process exits or all probes fail
        """
        delay = self._readiness_delay
        for attempt in range(1, self._readiness_attempts + 1):
            if self._process is not None and self._process.poll() is not None:
                log = self._read_server_log()
                raise ServerStartError(
                    f"Ollama server exited with code {self._process.returncode} during startup",
                    server_log=log,
                )

            if await self.is_healthy():
                return

            logger.info(f"[Ollama] Waiting for server (attempt {attempt}/{self._readiness_attempts})...")
            await asyncio.sleep(delay)
            delay *= 2

        raise ServerStartError(
            f"Ollama server did not become ready after {self._readiness_attempts} attempts",
            server_log=self._read_server_log(),
        )

    def stop(self) -> None:
        """Terminate the server process. Safe to call more than once."""
        process = self._process
        if process is not None and process.poll() is None:
            logger.info(f"[Ollama] Stopping server (PID: {process.pid})...")
            process.terminate()
            try:
                process.wait(timeout=10)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()

        if self._log_handle is not None:
            self._log_handle.close()
            self._log_handle = None

        self.state = "stopped"

    def install_signal_handlers(self) -> None:
        """Stop the server before the process exits on SIGINT/SIGTERM/SIGHUP."""

        def handler(signum, frame):
            logger.warning(f"[Ollama] Received {signal.Signals(signum).name}, cleaning up...")
            self.stop()
            if signum == signal.SIGINT:
                raise KeyboardInterrupt
            raise SystemExit(128 + signum)

        for sig in STOP_SIGNALS:
            self._previous_handlers[sig] = signal.signal(sig, handler)

    def restore_signal_handlers(self) -> None:
        for sig, previous in self._previous_handlers.items():
            signal.signal(sig, previous)
        self._previous_handlers.clear()

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    async def list_models(self) -> list[str]:
        """Names of locally available models."""
        async with httpx.AsyncClient(timeout=30.0, transport=self._transport) as client:
            response = await client.get(f"{self.base_url}/api/tags")
            response.raise_for_status()
        return [m["name"] for m in response.json().get("models", [])]

    async def ensure_model(self) -> None:
        """Pull the configured model if it isn't available locally.

        Raises:
            ModelPullError: If the download fails
        """
        model = self.config.model
        try:
            available = await self.list_models()
        except httpx.HTTPError as e:
            logger.warning(f"[Ollama] Could not list models ({e}), pulling {model}")
            available = []

        if any(model_matches(model, name) for name in available):
            logger.info(f"[Ollama] Model {model} is available")
            return

        logger.info(f"[Ollama] Model {model} not found. Downloading...")
        result = subprocess.run(
            self.command("ollama", "pull", model),
            capture_output=True,
            text=True,
            env=self.process_env(),
        )
        if result.returncode != 0:
            raise ModelPullError(f"Failed to download model {model}: {result.stderr.strip()}")

        logger.info(f"[Ollama] Downloaded {model}")

    def apply_context_window(self) -> str:
        """Create `<model>_ctx<N>` with num_ctx set to the context size.

        Falls back to the base model if creation fails.

        Returns:
            Model name used for inference
        """
        base = self.config.model
        derived = self.config.derived_model
        context_size = self.config.context_size

        # Namespaced models ("user/model:tag") must not create subdirectories
        modelfile = self.config.storage_path / f"Modelfile_{UNSAFE_FILENAME_CHARS.sub('_', derived)}"

        logger.info(f"[Ollama] Creating {derived} with context window {context_size}...")
        try:
            modelfile.write_text(f"FROM {base}\nPARAMETER num_ctx {context_size}\n")
            result = subprocess.run(
                self.command("ollama", "create", derived, "-f", self._store_path(modelfile)),
                capture_output=True,
                text=True,
                env=self.process_env(),
                timeout=600,
            )
            created = result.returncode == 0
            detail = result.stderr.strip()
        except (OSError, subprocess.TimeoutExpired) as e:
            created = False
            detail = str(e)

        if created:
            self.model = derived
        else:
            logger.warning(f"[Ollama] Failed to create custom model ({detail}), using {base}")
            self.model = base

        return self.model

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    async def api_available(self) -> bool:
        """Ping the model list endpoint."""
        try:
            async with httpx.AsyncClient(timeout=5.0, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}/api/tags")
                return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def generate(self, prompt: str) -> str | None:
        """Run a prompt through the HTTP API.

        Returns:
            Generated text, or None on any error or empty response
        """
        if not await self.api_available():
            return None

        payload = {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"num_ctx": self.config.context_size},
        }

        self.state = "invoking"
        try:
            async with httpx.AsyncClient(
                timeout=self.config.api_timeout, transport=self._transport
            ) as client:
                response = await client.post(f"{self.base_url}/api/generate", json=payload)
                response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.warning(f"[Ollama] API generate failed: {e.response.status_code}")
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"[Ollama] API generate error: {e}")
            return None
        finally:
            self.state = "ready"

        if not isinstance(data, dict):
            logger.warning(f"[Ollama] API generate returned unexpected payload: {type(data).__name__}")
            return None
        text = data.get("response")
        return text if isinstance(text, str) and text else None

    def run_cli(
        self,
        prompt: str,
        timeout: float,
        phase: Literal["invoking", "synthesizing"] = "invoking",
    ) -> str:
        """Run a prompt through `ollama run`.

        Args:
            prompt: Prompt text (sent on stdin)
            timeout: Seconds before the call is killed
            phase: Session state while the call runs

        Returns:
            Raw stdout, possibly partial (timeout) or empty (failure)
        """
        self.state = phase
        try:
            result = subprocess.run(
                self.command("ollama", "run", self.model),
                input=prompt,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
                env=self.process_env(),
            )
        except subprocess.TimeoutExpired as e:
            logger.warning(f"[Ollama] CLI call timed out after {timeout:.0f}s")
            partial = e.stdout or ""
            return partial.decode(errors="replace") if isinstance(partial, bytes) else partial
        except OSError as e:
            logger.warning(f"[Ollama] CLI call failed: {e}")
            return ""
        finally:
            self.state = "ready"

        if result.returncode != 0:
            logger.warning(f"[Ollama] CLI exited with code {result.returncode}")
        return result.stdout

    def interactive_shell(self) -> int:
        """Open a shell with the session environment and a model prompt.

        Returns:
            Shell exit code
        """
        env = {
            **self.process_env(),
            "CUSTOM_MODEL_NAME": self.model,
            "PS1": f"[Ollama-{self.model}] \\u@\\h:\\w\\$ ",
        }
        if self.config.container_image is not None:
            argv = self.command(
                "env", f"CUSTOM_MODEL_NAME={self.model}", f"PS1={env['PS1']}",
                "bash", "--noprofile", "--norc",
            )
        else:
            argv = ["bash", "--noprofile", "--norc"]

        return subprocess.run(argv, env=env).returncode
