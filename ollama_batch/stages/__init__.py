"""
Pipeline Stages

Each stage runs one part of the batch pipeline:
- batch: one inference per prompt file (API first, CLI fallback)
- synthesis: meta-analysis over all results (only with synthesis_question.txt)
"""

from .batch import run_batch_stage
from .synthesis import run_synthesis_stage

__all__ = ["run_batch_stage", "run_synthesis_stage"]
