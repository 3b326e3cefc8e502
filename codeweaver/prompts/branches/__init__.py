"""
Branch Prompts Package

This package contains prompts for branch-set generation:
- generate_branches: Distinct narrative choices following a story

Each prompt is a function that accepts context and returns a formatted prompt string.
"""

from .generate_branches import get_branches_prompt, get_simplified_branches_prompt

__all__ = [
    "get_branches_prompt",
    "get_simplified_branches_prompt",
]
