"""Chronicler package.

Archives long chat logs into titled narrative chapters. The run executor
(chronicler.executor) drives chunking, review, per-chunk generation and
checkpointing; chronicler.cli is the command-line front end.
"""

__all__ = [
    "archive",
    "artifacts",
    "checkpoint",
    "chunker",
    "config",
    "context",
    "env",
    "executor",
    "normalizer",
    "processor",
    "registry",
    "resume",
    "review",
    "utils",
    "validation",
]
