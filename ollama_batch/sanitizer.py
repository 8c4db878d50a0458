"""
Ollama Output Cleaning

`ollama run` writes spinner animations, cursor control sequences and
pull progress to its output even with TERM=dumb. This module strips
them so that results contain only the generated text.
"""

from __future__ import annotations

import re
from pathlib import Path

# Cleaned output shorter than this is treated as "nothing generated"
MIN_OUTPUT_BYTES = 10

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[a-zA-Z]")
# Cursor show/hide remnants whose ESC byte was already lost, e.g. "[?25l"
PRIVATE_MODE = re.compile(r"\[\?[0-9]*[hlHLK]")
# Color/erase remnants, e.g. "[0;32m", "[K"
RESIDUAL_SGR = re.compile(r"\[(?:[0-9]{1,2}(?:;[0-9]{1,2})?)?[mGK]")
SPINNER = re.compile("[⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏]")
CONTROL_CHARS = re.compile("[\r\f\x1b]")

STATUS_PREFIXES = (
    "pulling manifest",
    "verifying sha256",
    "writing manifest",
    "removing any unused layers",
)

# Enough passes for nested remnants; clean text never needs more than one
MAX_PASSES = 10


def _strip_sequences(text: str) -> str:
    text = ANSI_ESCAPE.sub("", text)
    text = PRIVATE_MODE.sub("", text)
    text = SPINNER.sub("", text)
    text = CONTROL_CHARS.sub("", text)
    return RESIDUAL_SGR.sub("", text)


def clean_output(raw: str) -> str:
    """Remove terminal noise and status lines from raw Ollama output.

    Deterministic and idempotent: clean_output(clean_output(x)) == clean_output(x).
    """
    text = raw
    for _ in range(MAX_PASSES):
        stripped = _strip_sequences(text)
        if stripped == text:
            break
        text = stripped

    lines = [
        line
        for line in text.split("\n")
        if line.strip() and not line.startswith(STATUS_PREFIXES)
    ]
    if not lines:
        return ""
    return "\n".join(lines) + "\n"


def is_meaningful(text: str, min_bytes: int = MIN_OUTPUT_BYTES) -> bool:
    """Check that cleaned text is long enough to count as real output."""
    return len(text.rstrip("\n").encode("utf-8")) >= min_bytes


def sanitize_file(input_file: str | Path, output_file: str | Path) -> bool:
    """Clean a raw output file into output_file.

    Args:
        input_file: Raw captured output
        output_file: Destination for the cleaned text (always written
            when input_file exists)

    Returns:
        True if the cleaned output is meaningful
    """
    input_file = Path(input_file)
    if not input_file.is_file():
        return False

    # newline="" keeps lone \r (spinner redraws) for clean_output to strip
    with open(input_file, encoding="utf-8", errors="replace", newline="") as f:
        cleaned = clean_output(f.read())
    Path(output_file).write_text(cleaned, encoding="utf-8")
    return is_meaningful(cleaned)
