"""
Text Processing Utilities for Generated Narratives

This module provides pure text processing functions for:
- Text normalization (Unicode handling, accent removal, whitespace)
- Word counting for length bounds
- Whole-word term matching with simple inflections (loop → loops, looping)
- Paragraph splitting and error previews

These are standalone functions (not class methods) for easy reuse
across the validator, the story cache and the fallback selector.

Architecture:
- Pure functions with no external dependencies (except unicodedata / re)
- Called by ContentValidator for coverage and length checks
- Called by ConceptVocabulary for alias lookup and term coverage
"""

import re
import unicodedata
from functools import lru_cache
from typing import List, Iterable

from codeweaver.config.limits import ERROR_PREVIEW_LENGTH


# =========================================================================
# NORMALIZATION
# =========================================================================

def normalize_text(text: str) -> str:
    """
    Normalize text for comparison.

    Handles:
    - Accented characters (é → e, ɔ stays as is)
    - Case normalization (to lowercase)
    - Runs of whitespace collapsed to a single space

    Example: "Kofi's Kénte  Loops" → "kofi's kente loops"
    """
    if not text:
        return ""

    # NFKD decomposition separates base char from combining chars
    normalized = unicodedata.normalize('NFKD', text)
    ascii_only = ''.join(c for c in normalized if not unicodedata.combining(c))
    return " ".join(ascii_only.lower().split())


def count_words(text: str) -> int:
    """Count whitespace-separated words"""
    if not text:
        return 0
    return len(text.split())


# =========================================================================
# TERM MATCHING
# =========================================================================

# Simple English inflections accepted after a term: loop/loops, repeat/repeated,
# branch/branches, weave/weaved, iterate/iterating
_INFLECTIONS = r"(?:s|es|ed|ing|d)?"


@lru_cache(maxsize=512)
def term_pattern(term: str) -> "re.Pattern[str]":
    """
    Build a whole-word pattern for a vocabulary term.

    Multi-word terms ("step by step") match with any whitespace between
    words. Partial-word matches never count: "loop" does not match "sloop".
    Boundaries are checked with lookarounds so terms that start or end with
    punctuation ("c++", ".net") still match.
    """
    words = normalize_text(term).split()
    if not words:
        raise ValueError("Empty term")
    body = r"\s+".join(re.escape(w) for w in words)
    return re.compile(rf"(?<!\w){body}{_INFLECTIONS}(?!\w)")


def contains_term(normalized_text: str, term: str) -> bool:
    """
    Check whether already-normalized text contains a term as a whole word.

    Args:
        normalized_text: Output of normalize_text()
        term: Vocabulary term (normalized internally)
    """
    if not normalized_text or not term:
        return False
    return term_pattern(term).search(normalized_text) is not None


def contains_any_term(normalized_text: str, terms: Iterable[str]) -> bool:
    return any(contains_term(normalized_text, t) for t in terms)


# =========================================================================
# PARAGRAPHS & PREVIEWS
# =========================================================================

def split_paragraphs(text: str) -> List[str]:
    """
    Split narration into paragraphs.

    Blank lines separate paragraphs. Text without blank lines is kept
    as a single paragraph.
    """
    if not text:
        return []
    parts = re.split(r"\n\s*\n", text.strip())
    return [" ".join(p.split()) for p in parts if p.strip()]


def preview(text: str, length: int = ERROR_PREVIEW_LENGTH) -> str:
    """First `length` characters of text, for error messages"""
    if text is None:
        return ""
    return text[:length]
