"""
Challenge Prompts Package

This package contains prompts for continuations that introduce a coding challenge:
- continue_with_challenge: Continuation plus an embedded block-coding challenge

Each prompt is a function that accepts context and returns a formatted prompt string.
"""

from .continue_with_challenge import get_challenge_prompt, BLOCK_TYPE_DESCRIPTIONS

__all__ = [
    "get_challenge_prompt",
    "BLOCK_TYPE_DESCRIPTIONS",
]
