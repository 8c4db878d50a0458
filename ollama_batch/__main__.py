"""
Allow running the batch processor as a module.

Usage:
    python -m ollama_batch gemma3:27b ./prompts ./results auto 8192
    python -m ollama_batch deepseek-r1:8b ./data ./output 2 32768 -r -s
"""

from .cli import main

if __name__ == "__main__":
    main()
