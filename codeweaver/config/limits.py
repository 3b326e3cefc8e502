"""
Centralized Generation Limits

All content length limits and cache bounds in one place for consistency.
Import these in the prompt builder, the validator and the cache.
"""

# =============================================================================
# NARRATIVE LENGTH BOUNDS (words)
# =============================================================================

# Fresh stories ("approximately 300-500 words")
STORY_MIN_WORDS = 300
STORY_MAX_WORDS = 500

# Simplified retry prompt accepts shorter stories
SIMPLIFIED_STORY_MIN_WORDS = 150

# Branch stub continuation text
BRANCH_MIN_WORDS = 30
BRANCH_MAX_WORDS = 200

# Continuations after a branch choice
CONTINUATION_MIN_WORDS = 200
CONTINUATION_MAX_WORDS = 400

# =============================================================================
# REQUEST LIMITS
# =============================================================================

DEFAULT_BRANCH_COUNT = 2
MIN_BRANCH_COUNT = 1
MAX_BRANCH_COUNT = 5

# Narrative history blob passed back into prompts
NARRATIVE_HISTORY_MAX_LENGTH = 4000

# Learning concepts per request
MAX_LEARNING_CONCEPTS = 6

# Previous stories remembered per learner
HISTORY_MAX_STORIES = 10

# Learner ids double as storage path segments
LEARNER_ID_PATTERN = r"^[A-Za-z0-9_-][A-Za-z0-9_.-]{0,63}$"

# Challenge difficulty scale (matches skill levels 1-5)
CHALLENGE_MIN_DIFFICULTY = 1
CHALLENGE_MAX_DIFFICULTY = 5

# =============================================================================
# DIAGNOSTICS
# =============================================================================

# Raw text included in parse-failure diagnostics
ERROR_PREVIEW_LENGTH = 200

# =============================================================================
# CACHE BOUNDS
# =============================================================================

MAX_STORY_ENTRIES_DEFAULT = 20
MAX_BRANCH_ENTRIES_DEFAULT = 10

# Age-based purge default (days)
CACHE_MAX_AGE_DAYS_DEFAULT = 30
