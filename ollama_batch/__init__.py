"""
Batch LLM Processing with Ollama on GPU Nodes

Runs a directory of plain-text prompts through an Ollama model:
1. GPU detection - resolve the device set for the model server
2. Workspace - timestamped batch directory with prompt archive
3. Batch - one inference per prompt (API first, CLI fallback)
4. Synthesis - optional meta-analysis over all results

Owns the Ollama server lifecycle for the duration of each run.
"""

__version__ = "0.1.0"
