"""Configuration package for Codeweaver"""

from .settings import Settings, get_settings
from .limits import (
    STORY_MIN_WORDS,
    STORY_MAX_WORDS,
    BRANCH_MIN_WORDS,
    BRANCH_MAX_WORDS,
    CONTINUATION_MIN_WORDS,
    CONTINUATION_MAX_WORDS,
    ERROR_PREVIEW_LENGTH,
    MAX_STORY_ENTRIES_DEFAULT,
    MAX_BRANCH_ENTRIES_DEFAULT,
)

__all__ = [
    "Settings",
    "get_settings",
    "STORY_MIN_WORDS",
    "STORY_MAX_WORDS",
    "BRANCH_MIN_WORDS",
    "BRANCH_MAX_WORDS",
    "CONTINUATION_MIN_WORDS",
    "CONTINUATION_MAX_WORDS",
    "ERROR_PREVIEW_LENGTH",
    "MAX_STORY_ENTRIES_DEFAULT",
    "MAX_BRANCH_ENTRIES_DEFAULT",
]
