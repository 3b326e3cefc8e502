"""
Validation Service for Generated Narrative Output

This module parses and validates generator responses against the output
contract a prompt promised. Handles common LLM output issues:
- Markdown code fences and prose around the JSON payload
- Trailing commas, JavaScript comments
- Unescaped quotes inside strings
- Invalid escape sequences
- Truncated JSON (closes open strings and brackets)

Validation pipeline (ContentValidator.validate):
1. Extraction   - parse failure is fatal, carries a 200-char preview
2. Schema       - all missing / malformed required fields accumulated
3. Length       - narrative word counts outside bounds (soft)
4. Coverage     - every requested concept must appear, literally or via
                  a related term from the ConceptVocabulary (hard)

A result is valid iff it has no hard errors. Soft errors are kept as
warnings on an otherwise-accepted result.

Architecture:
- JSON cleaning helpers are stateless functions
- ContentValidator holds only the injected vocabulary
- Called by NarrativeOrchestrator in its VALIDATE state
"""

import json
import math
import re
import logging
from typing import Dict, Any, List, Optional, Tuple

from codeweaver.models import (
    OutputContract,
    FieldShape,
    RawGenerationResponse,
    StoryRequest,
    TemplateKind,
    ValidationIssue,
    ValidationResult,
    IssueSeverity,
    StoryDraft,
    BranchDraft,
    BranchSetDraft,
    ChallengeDraft,
)
from codeweaver.services.concept_vocabulary import ConceptVocabulary
from codeweaver.services.errors import ParseError, SchemaError, ConceptCoverageError, LengthError
from codeweaver.services.text_processing import normalize_text, count_words, preview

logger = logging.getLogger(__name__)

# Issue codes that are not exception-backed
BRANCH_COUNT_CODE = "branch_count"
OPTIONAL_FIELD_CODE = "optional_field_malformed"

# Wrapper keys some generators put around the branch array
BRANCH_WRAPPER_KEYS = ("branches", "choices", "options")


# =========================================================================
# JSON CLEANING UTILITIES
# =========================================================================

def clean_json_output(output: str, truncated: bool = False) -> str:
    """
    Clean markdown code blocks from LLM output and repair common JSON issues.

    Handles:
    - Markdown code blocks (```json ... ```)
    - Preamble text before JSON (e.g., "Here is your story:\\n{...}")
    - JSON arrays as well as objects
    - Unescaped quotes in string values
    - Invalid escape sequences
    - Invalid control characters (0x00-0x1f except tab, newline, carriage return)
    - Truncated output (only when the generator reported truncation)

    Args:
        output: Raw LLM output possibly containing markdown
        truncated: Whether the generator stopped at its token limit

    Returns:
        Cleaned JSON string ready for parsing (may still be invalid)
    """
    result_str = output.strip()

    # Remove invalid control characters that break JSON parsing
    result_str = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f]', '', result_str)

    # Strategy 1: JSON inside markdown code blocks
    # Greedy match so nested objects stay intact
    fence_match = re.search(r'```(?:json)?\s*([\[{][\s\S]*[\]}])\s*```', result_str)
    if fence_match:
        extracted = fence_match.group(1).strip()
        if _parses(extracted):
            return extracted

    # Strategy 2: balanced JSON value anywhere in the text
    extracted = _extract_json_value(result_str)
    if extracted:
        if _parses(extracted):
            return extracted
        result_str = extracted
    else:
        # Strategy 3: unbalanced - strip fences and keep from the first bracket
        result_str = _strip_fences(result_str)
        start = _first_bracket(result_str)
        if start > 0:
            result_str = result_str[start:]

    if _parses(result_str):
        return result_str

    repaired = _strip_comments_and_trailing_commas(result_str)
    if _parses(repaired):
        return repaired

    repaired = _repair_unescaped_quotes(repaired)
    if _parses(repaired):
        return repaired

    repaired = _fix_invalid_escapes(repaired)
    if _parses(repaired):
        return repaired

    if truncated:
        closed = close_truncated_json(repaired)
        if _parses(closed):
            logger.warning(f"Repaired truncated JSON ({len(repaired)} → {len(closed)} chars)")
            return closed

    return repaired


def close_truncated_json(json_str: str) -> str:
    """
    Close a JSON document cut off mid-way.

    Closes an open string, drops a dangling comma or key, then appends the
    missing closing brackets in the right order.
    """
    stack: List[str] = []
    in_string = False
    escape_next = False

    for char in json_str:
        if escape_next:
            escape_next = False
            continue
        if char == '\\' and in_string:
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char in '{[':
            stack.append('}' if char == '{' else ']')
        elif char in '}]' and stack:
            stack.pop()

    result = json_str
    if escape_next:
        result = result[:-1]
    if in_string:
        result += '"'

    result = result.rstrip()
    # Dangling "key": or trailing comma
    result = re.sub(r',\s*"[^"]*"\s*:\s*$', '', result)
    result = re.sub(r'"[^"]*"\s*:\s*$', '', result)
    result = result.rstrip().rstrip(',')

    return result + ''.join(reversed(stack))


def _parses(text: str) -> bool:
    try:
        json.loads(text, strict=False)
        return True
    except json.JSONDecodeError:
        return False


def _strip_fences(text: str) -> str:
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


def _first_bracket(text: str) -> int:
    positions = [p for p in (text.find('{'), text.find('[')) if p != -1]
    return min(positions) if positions else -1


def _extract_json_value(text: str) -> Optional[str]:
    """
    Extract the first JSON object or array from text by balancing brackets.

    This handles generators that wrap JSON in prose:
    - "Here is the story:\\n{...}"
    - "Sure! ```json\\n[...]\\n```"

    Returns:
        The bracket-balanced substring, or None if no closed value is found
    """
    start_idx = _first_bracket(text)
    if start_idx == -1:
        return None

    depth = 0
    in_string = False
    escape_next = False

    for i in range(start_idx, len(text)):
        char = text[i]

        if escape_next:
            escape_next = False
            continue
        if char == '\\' and in_string:
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue

        if char in '{[':
            depth += 1
        elif char in '}]':
            depth -= 1
            if depth == 0:
                return text[start_idx:i + 1]

    return None


def _strip_comments_and_trailing_commas(json_str: str) -> str:
    # JavaScript-style comments (only at line starts or after whitespace, to spare URLs)
    json_str = re.sub(r'(^|\s)//[^\n]*', r'\1', json_str)
    json_str = re.sub(r'/\*.*?\*/', '', json_str, flags=re.DOTALL)
    # Trailing commas before ] or }
    return re.sub(r',(\s*[}\]])', r'\1', json_str)


def _fix_invalid_escapes(json_str: str) -> str:
    """
    Fix invalid escape sequences in JSON.

    JSON only allows " \\ / b f n r t and uXXXX after a backslash. Malformed
    unicode escapes are dropped; other invalid escapes lose their backslash.
    """
    fixed = re.sub(r'\\u(?![0-9a-fA-F]{4})[0-9a-fA-F]{0,3}', '', json_str)
    valid_escapes = set('"\\bfnrtu/')

    def fix_escape(match):
        char_after = match.group(1)
        if char_after in valid_escapes:
            return match.group(0)
        return char_after

    return re.sub(r'\\(.)', fix_escape, fixed, flags=re.DOTALL)


def _repair_unescaped_quotes(json_str: str) -> str:
    """
    Escape double quotes embedded inside JSON string values.

    A quote inside a string is treated as the closing quote only when what
    follows looks like JSON structure (":", "}", "]", or "," followed by a
    new key or value); otherwise it is escaped.
    """
    result = []
    i = 0
    in_string = False
    length = len(json_str)

    while i < length:
        char = json_str[i]

        if char == '\\' and i + 1 < length:
            result.append(json_str[i:i + 2])
            i += 2
            continue

        if char == '"':
            if not in_string:
                in_string = True
                result.append(char)
            elif _is_string_boundary(json_str[i + 1:i + 60]):
                in_string = False
                result.append(char)
            else:
                result.append('\\"')
        else:
            result.append(char)
        i += 1

    return ''.join(result)


def _is_string_boundary(following: str) -> bool:
    stripped = following.lstrip()
    if not stripped:
        return True
    if stripped[0] in '}]:':
        return True
    if stripped[0] == ',':
        after_comma = stripped[1:].lstrip()
        if not after_comma:
            return True
        if after_comma[0] in '"{[' or after_comma[0].isdigit() or after_comma[0] == '-':
            return True
        return after_comma.startswith(('true', 'false', 'null'))
    # Newline followed by a new key
    return following.startswith('\n') and re.match(r'^\s*"[^"]*"\s*:', following) is not None


# =========================================================================
# PAYLOAD EXTRACTION
# =========================================================================

def extract_payload(raw: RawGenerationResponse) -> Any:
    """
    Locate and parse the JSON payload in a generator response.

    Raises:
        ParseError: If no parseable structure is found. The message carries
            the first 200 characters of the raw text.
    """
    text = raw.text or ""
    if not text.strip():
        raise ParseError(f"Empty response. Preview: {preview(text)!r}")

    cleaned = clean_json_output(text, truncated=raw.truncated)
    try:
        return json.loads(cleaned, strict=False)
    except json.JSONDecodeError as e:
        raise ParseError(f"Unparseable response ({e.msg}). Preview: {preview(text)!r}") from e


def get_path(data: Any, path: str) -> Tuple[bool, Any]:
    """Resolve a dotted path. Returns (found, value)."""
    current = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return False, None
        current = current[part]
    return True, current


def _coerce_narrative(item: Dict[str, Any], fields: List[str]) -> None:
    """Join paragraph lists into a single string for narrative fields."""
    for field_name in fields:
        value = item.get(field_name)
        if isinstance(value, list) and value and all(isinstance(v, str) for v in value):
            item[field_name] = "\n\n".join(v.strip() for v in value)
        elif isinstance(value, list) and value and all(isinstance(v, dict) for v in value):
            # Content blocks: [{"text": "..."}]
            texts = [str(v.get("text", "")).strip() for v in value if v.get("text")]
            if texts:
                item[field_name] = "\n\n".join(texts)


def shape_matches(value: Any, shape: FieldShape) -> bool:
    if shape == FieldShape.STRING:
        return isinstance(value, str) and bool(value.strip())
    if shape == FieldShape.LIST:
        return isinstance(value, list)
    if shape == FieldShape.OBJECT:
        return isinstance(value, dict)
    if shape == FieldShape.BOOLEAN:
        return isinstance(value, bool) or (isinstance(value, str) and value.lower() in ("true", "false"))
    if shape == FieldShape.NUMBER:
        if isinstance(value, bool):
            return False
        if isinstance(value, (int, float, str)):
            try:
                # Infinity and NaN parse but are not usable numbers
                return math.isfinite(float(value))
            except (ValueError, OverflowError):
                return False
    return False


def _describe(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, str) and not value.strip():
        return "empty string"
    return type(value).__name__


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def _as_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


# =========================================================================
# DRAFT BUILDERS
# =========================================================================

def build_story_draft(payload: Dict[str, Any], template: TemplateKind) -> StoryDraft:
    """Typed, lenient view of a story-shaped payload"""
    notes = payload.get("culturalNotes")
    if not isinstance(notes, dict):
        notes = {}

    challenge = None
    raw_challenge = payload.get("challenge")
    if isinstance(raw_challenge, dict):
        blocks = raw_challenge.get("availableBlockTypes")
        criteria = raw_challenge.get("successCriteria")
        challenge = ChallengeDraft(
            title=_as_str(raw_challenge.get("title")),
            description=_as_str(raw_challenge.get("description")),
            difficulty=_as_int(raw_challenge.get("difficulty")),
            available_block_types=[str(b) for b in blocks] if isinstance(blocks, list) else [],
            success_criteria=criteria if isinstance(criteria, dict) else {},
        )

    return StoryDraft(
        response_kind=template,
        title=_as_str(payload.get("title")),
        theme=_as_str(payload.get("theme")),
        region=_as_str(payload.get("region")),
        character_name=_as_str(payload.get("characterName")),
        content=_as_str(payload.get("content")),
        has_choices=_as_bool(payload.get("hasChoices", False)),
        choice_prompt=_as_str(payload.get("choicePrompt")),
        cultural_notes={str(k): str(v) for k, v in notes.items()},
        challenge=challenge,
    )


def build_branch_draft(item: Dict[str, Any]) -> BranchDraft:
    return BranchDraft(
        choice_text=_as_str(item.get("choiceText")),
        description=_as_str(item.get("description")),
        content=_as_str(item.get("content")),
        emotional_tone=_as_str(item.get("emotionalTone")),
        focus_concept=_as_str(item.get("focusConcept")),
    )


# =========================================================================
# CONTENT VALIDATOR
# =========================================================================

class ContentValidator:
    """
    Validates generator output against an output contract and a request.

    Attributes:
        vocabulary: Concept -> related terms lookup for the coverage check
    """

    # Fields whose text counts toward concept coverage
    COVERAGE_FIELDS = ("title", "content", "choiceText", "description", "choicePrompt")

    def __init__(self, vocabulary: ConceptVocabulary):
        self.vocabulary = vocabulary

    def validate(
        self,
        raw: RawGenerationResponse,
        contract: OutputContract,
        request: StoryRequest
    ) -> ValidationResult:
        """
        Run extraction, schema, length and coverage checks.

        Parse failure returns immediately with a single fatal error; every
        other check accumulates its issues.
        """
        try:
            payload = extract_payload(raw)
        except ParseError as e:
            logger.warning(f"Parse failure for {contract.response_kind.value} response: {e}")
            return ValidationResult(
                is_valid=False,
                extracted=None,
                errors=[ValidationIssue(code=ParseError.code, message=str(e))],
            )

        errors: List[ValidationIssue] = []

        if contract.root_is_array:
            items = self._check_branch_set(payload, contract, errors)
            extracted = BranchSetDraft(branches=[build_branch_draft(item) for item in items])
        else:
            item = self._check_object(payload, contract, errors)
            items = [item]
            extracted = build_story_draft(item, contract.response_kind)

        self._check_lengths(items, contract, errors)

        text = normalize_text(" ".join(
            str(item.get(f)) for item in items for f in self.COVERAGE_FIELDS if isinstance(item.get(f), str)
        ))
        covered = self._check_coverage(text, request, errors)
        extracted.concepts_covered = covered

        result = ValidationResult(
            is_valid=not any(e.severity == IssueSeverity.HARD for e in errors),
            extracted=extracted,
            errors=errors,
        )

        if result.is_valid and result.warnings:
            logger.info(
                f"Accepted {contract.response_kind.value} with {len(result.warnings)} warning(s): "
                f"{', '.join(w.code for w in result.warnings)}"
            )
        elif not result.is_valid:
            logger.warning(
                f"Rejected {contract.response_kind.value}: "
                f"{'; '.join(e.message for e in result.hard_errors)}"
            )
        return result

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    def _check_object(
        self,
        payload: Any,
        contract: OutputContract,
        errors: List[ValidationIssue],
        prefix: str = ""
    ) -> Dict[str, Any]:
        if isinstance(payload, list) and len(payload) == 1 and isinstance(payload[0], dict):
            payload = payload[0]
        if not isinstance(payload, dict):
            errors.append(ValidationIssue(
                code=SchemaError.code,
                message=f"{prefix or 'Response'} should be an object, got {_describe(payload)}",
            ))
            return {}

        item = dict(payload)
        _coerce_narrative(item, contract.narrative_fields)

        for path, shape in contract.required_fields.items():
            found, value = get_path(item, path)
            label = f"{prefix}{path}"
            if not found or value is None:
                errors.append(ValidationIssue(
                    code=SchemaError.code,
                    message=f"Missing required field '{label}'",
                ))
            elif not shape_matches(value, shape):
                errors.append(ValidationIssue(
                    code=SchemaError.code,
                    message=f"Field '{label}' should be {shape.value}, got {_describe(value)}",
                ))

        for path, shape in contract.optional_fields.items():
            found, value = get_path(item, path)
            if found and value is not None and not shape_matches(value, shape):
                errors.append(ValidationIssue(
                    code=OPTIONAL_FIELD_CODE,
                    message=f"Optional field '{prefix}{path}' should be {shape.value}, got {_describe(value)}",
                    severity=IssueSeverity.SOFT,
                ))

        return item

    def _check_branch_set(
        self,
        payload: Any,
        contract: OutputContract,
        errors: List[ValidationIssue]
    ) -> List[Dict[str, Any]]:
        if isinstance(payload, dict):
            for key in BRANCH_WRAPPER_KEYS:
                if isinstance(payload.get(key), list):
                    payload = payload[key]
                    break

        if not isinstance(payload, list):
            errors.append(ValidationIssue(
                code=SchemaError.code,
                message=f"Response should be an array of branches, got {_describe(payload)}",
            ))
            return []

        expected = contract.expected_items
        if expected is not None and len(payload) < expected:
            errors.append(ValidationIssue(
                code=BRANCH_COUNT_CODE,
                message=f"Expected {expected} branches, got {len(payload)}",
            ))
        elif expected is not None and len(payload) > expected:
            errors.append(ValidationIssue(
                code=BRANCH_COUNT_CODE,
                message=f"Expected {expected} branches, got {len(payload)}; extra branches dropped",
                severity=IssueSeverity.SOFT,
            ))
            payload = payload[:expected]

        return [
            self._check_object(entry, contract, errors, prefix=f"branches[{i}].")
            for i, entry in enumerate(payload)
        ]

    # -------------------------------------------------------------------------
    # Length & Coverage
    # -------------------------------------------------------------------------

    def _check_lengths(
        self,
        items: List[Dict[str, Any]],
        contract: OutputContract,
        errors: List[ValidationIssue]
    ) -> None:
        if not contract.max_words:
            return
        multiple = len(items) > 1 or contract.root_is_array
        for i, item in enumerate(items):
            for field_name in contract.narrative_fields:
                value = item.get(field_name)
                if not isinstance(value, str):
                    continue
                words = count_words(value)
                if words < contract.min_words or words > contract.max_words:
                    label = f"branches[{i}].{field_name}" if multiple else field_name
                    errors.append(ValidationIssue(
                        code=LengthError.code,
                        message=(
                            f"'{label}' has {words} words, expected "
                            f"{contract.min_words}-{contract.max_words}"
                        ),
                        severity=IssueSeverity.SOFT,
                    ))

    def _check_coverage(
        self,
        normalized_text: str,
        request: StoryRequest,
        errors: List[ValidationIssue]
    ) -> List[str]:
        """
        Verify each requested concept is covered.

        Returns:
            Covered concepts: requested ones found in the text, followed by
            any other vocabulary concepts the text mentions
        """
        covered: List[str] = []
        for concept in request.learning_concepts:
            if self.vocabulary.is_covered(concept, normalized_text):
                covered.append(concept)
            else:
                errors.append(ValidationIssue(
                    code=ConceptCoverageError.code,
                    message=f"Learning concept '{concept}' is not covered by the text",
                ))

        requested = {self.vocabulary.canonical(c) for c in request.learning_concepts}
        for concept in self.vocabulary.detect_concepts(normalized_text):
            if concept not in requested and concept not in covered:
                covered.append(concept)
        return covered
