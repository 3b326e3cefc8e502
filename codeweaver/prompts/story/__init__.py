"""
Story Prompts Package

This package contains prompts for fresh story generation:
- generate_story: Full educational story with Kente weaving metaphor
- generate_simplified_story: Reduced prompt used for the single retry

Each prompt is a function that accepts context and returns a formatted prompt string.
"""

from .generate_story import get_story_prompt, get_simplified_story_prompt

__all__ = [
    "get_story_prompt",
    "get_simplified_story_prompt",
]
