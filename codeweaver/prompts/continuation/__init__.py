"""
Continuation Prompts Package

This package contains prompts for continuing a story from a chosen branch:
- continue_story: Continuation with optional further choices

Each prompt is a function that accepts context and returns a formatted prompt string.
"""

from .continue_story import get_continuation_prompt, get_simplified_continuation_prompt

__all__ = [
    "get_continuation_prompt",
    "get_simplified_continuation_prompt",
]
