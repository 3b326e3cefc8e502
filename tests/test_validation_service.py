"""
Unit tests for the ContentValidator and JSON cleaning helpers.

Run with: python -m pytest tests/test_validation_service.py -v
"""

import json

import pytest

from codeweaver.models import (
    FieldShape,
    StoryRequest,
    RequestKind,
    RawGenerationResponse,
    IssueSeverity,
    StoryDraft,
    BranchSetDraft,
)
from codeweaver.services.prompt_builder import PromptBuilder
from codeweaver.services.validation_service import (
    ContentValidator,
    clean_json_output,
    close_truncated_json,
    shape_matches,
    _as_int,
)

from conftest import story_json, branch_json, words_of, LOOPS_AND_CONDITIONALS_SENTENCE


def raw(text: str, truncated: bool = False) -> RawGenerationResponse:
    return RawGenerationResponse(text=text, truncated=truncated)


class TestJsonCleaning:
    """Extraction and repair of LLM JSON output"""

    def test_strips_markdown_fence_and_prose(self):
        output = 'Here is your story:\n```json\n{"title": "A", "content": "B"}\n```\nEnjoy!'
        assert json.loads(clean_json_output(output)) == {"title": "A", "content": "B"}

    def test_removes_trailing_commas_and_comments(self):
        output = '{\n  "title": "A", // the title\n  "tags": ["x", "y",],\n}'
        assert json.loads(clean_json_output(output)) == {"title": "A", "tags": ["x", "y"]}

    def test_escapes_embedded_quotes(self):
        output = '{"title": "The "Golden" Loom", "content": "text"}'
        assert json.loads(clean_json_output(output))["title"] == 'The "Golden" Loom'

    def test_extracts_arrays(self):
        output = 'Choices:\n[{"choiceText": "A"}, {"choiceText": "B"}]'
        assert len(json.loads(clean_json_output(output))) == 2

    def test_truncated_output_closed_only_when_flagged(self):
        output = '{"title": "A", "content": "some text'
        assert json.loads(clean_json_output(output, truncated=True)) == {"title": "A", "content": "some text"}
        with pytest.raises(json.JSONDecodeError):
            json.loads(clean_json_output(output, truncated=False))

    def test_close_truncated_json_drops_dangling_key(self):
        closed = close_truncated_json('{"branches": [{"choiceText": "A"}, {"choiceText":')
        assert json.loads(closed) == {"branches": [{"choiceText": "A"}, {}]}


class TestStoryValidation:
    """Schema, length and coverage checks for story responses"""

    def setup_method(self):
        from codeweaver.services.concept_vocabulary import ConceptVocabulary
        self.validator = ContentValidator(ConceptVocabulary.load())
        self.builder = PromptBuilder()

    def validate(self, text: str, concepts=("loops", "conditionals"), truncated: bool = False):
        request = StoryRequest(learning_concepts=list(concepts))
        contract = self.builder.build(request).contract
        return self.validator.validate(raw(text, truncated), contract, request)

    def test_loops_and_conditionals_story_is_valid(self):
        result = self.validate(story_json(word_count=350))
        assert result.is_valid
        assert result.errors == []
        assert isinstance(result.extracted, StoryDraft)
        assert {"loops", "conditionals"}.issubset(result.extracted.concepts_covered)
        assert result.extracted.character_name == "Kofi"

    def test_parse_failure_is_fatal_with_preview(self):
        text = "I'm sorry, I cannot write that story right now." * 10
        result = self.validate(text)
        assert not result.is_valid
        assert result.extracted is None
        assert [e.code for e in result.errors] == ["parse_error"]
        assert text[:200] in result.errors[0].message
        assert text[:201] not in result.errors[0].message

    def test_schema_errors_are_accumulated(self):
        payload = json.loads(story_json())
        del payload["theme"]
        del payload["characterName"]
        result = self.validate(json.dumps(payload))
        assert not result.is_valid
        schema_messages = [e.message for e in result.errors if e.code == "schema_error"]
        assert len(schema_messages) == 2
        assert any("theme" in m for m in schema_messages)
        assert any("characterName" in m for m in schema_messages)

    def test_wrong_shape_is_schema_error(self):
        result = self.validate(story_json(title=42))
        assert not result.is_valid
        assert result.has_error("schema_error")

    def test_short_story_accepted_with_length_warning(self):
        result = self.validate(story_json(word_count=80))
        assert result.is_valid
        assert [w.code for w in result.warnings] == ["length_out_of_bounds"]
        assert result.warnings[0].severity == IssueSeverity.SOFT

    def test_uncovered_concept_is_rejected(self):
        result = self.validate(story_json(word_count=350), concepts=("loops", "debugging"))
        assert not result.is_valid
        coverage = [e for e in result.hard_errors if e.code == "concept_coverage"]
        assert len(coverage) == 1
        assert "debugging" in coverage[0].message

    def test_related_term_counts_as_coverage(self):
        content = words_of("Ama would repeat the same stripe across the whole cloth.", 320)
        result = self.validate(story_json(content=content), concepts=("loops",))
        assert result.is_valid, [e.message for e in result.errors]
        assert "loops" in result.extracted.concepts_covered

    def test_coverage_is_accent_insensitive(self):
        content = words_of("The weaver made a bold décision about each row.", 320)
        result = self.validate(story_json(content=content), concepts=("conditionals",))
        assert result.is_valid

    def test_paragraph_list_content_is_joined(self):
        paragraphs = [words_of(LOOPS_AND_CONDITIONALS_SENTENCE, 175)] * 2
        result = self.validate(story_json(content=paragraphs))
        assert result.is_valid
        assert "\n\n" in result.extracted.content


class TestBranchValidation:
    """Branch-set responses"""

    def setup_method(self):
        from codeweaver.services.concept_vocabulary import ConceptVocabulary
        self.validator = ContentValidator(ConceptVocabulary.load())
        self.builder = PromptBuilder()
        self.request = StoryRequest(
            kind=RequestKind.BRANCH_SET,
            learning_concepts=["loops"],
            branch_count=2,
        )
        self.contract = self.builder.build(self.request).contract

    def test_valid_branch_set(self):
        result = self.validator.validate(raw(branch_json(2)), self.contract, self.request)
        assert result.is_valid
        assert isinstance(result.extracted, BranchSetDraft)
        assert len(result.extracted.branches) == 2

    def test_too_few_branches_is_hard_error(self):
        result = self.validator.validate(raw(branch_json(1)), self.contract, self.request)
        assert not result.is_valid
        assert result.has_error("branch_count")

    def test_extra_branches_dropped_with_warning(self):
        result = self.validator.validate(raw(branch_json(4)), self.contract, self.request)
        assert result.is_valid
        assert len(result.extracted.branches) == 2
        assert [w.code for w in result.warnings] == ["branch_count"]

    def test_wrapped_array_is_accepted(self):
        wrapped = json.dumps({"branches": json.loads(branch_json(2))})
        result = self.validator.validate(raw(wrapped), self.contract, self.request)
        assert result.is_valid

    def test_item_errors_carry_index(self):
        items = json.loads(branch_json(2))
        del items[1]["choiceText"]
        result = self.validator.validate(raw(json.dumps(items)), self.contract, self.request)
        assert not result.is_valid
        assert any("branches[1].choiceText" in e.message for e in result.hard_errors)


class TestChallengeValidation:
    """Nested challenge fields use dotted paths"""

    def setup_method(self):
        from codeweaver.services.concept_vocabulary import ConceptVocabulary
        self.validator = ContentValidator(ConceptVocabulary.load())
        self.request = StoryRequest(
            kind=RequestKind.CONTINUATION,
            learning_concepts=["loops"],
            branch_id="story_1_branch_1",
            introduce_challenge=True,
        )
        self.contract = PromptBuilder().build(self.request).contract

    def test_missing_nested_field_reported_by_path(self):
        text = story_json(word_count=250, challenge={
            "title": "Repeat the stripe",
            "description": "Use a repeat block to weave five stripes.",
            "availableBlockTypes": ["move", "repeat"],
        })
        result = self.validator.validate(raw(text), self.contract, self.request)
        assert not result.is_valid
        assert any("challenge.difficulty" in e.message for e in result.hard_errors)

    def test_complete_challenge_is_extracted(self):
        text = story_json(word_count=250, challenge={
            "title": "Repeat the stripe",
            "description": "Use a repeat block to weave five stripes.",
            "difficulty": "2",
            "availableBlockTypes": ["move", "repeat"],
            "successCriteria": {"requiredBlockTypes": ["repeat"]},
        })
        result = self.validator.validate(raw(text), self.contract, self.request)
        assert result.is_valid, [e.message for e in result.errors]
        assert result.extracted.challenge.difficulty == 2
        assert result.extracted.challenge.available_block_types == ["move", "repeat"]

    def test_infinite_difficulty_is_schema_error(self):
        text = story_json(word_count=250, challenge={
            "title": "Repeat the stripe",
            "description": "Use a repeat block to weave five stripes.",
            "difficulty": float("inf"),
            "availableBlockTypes": ["move", "repeat"],
        })
        assert '"difficulty": Infinity' in text

        result = self.validator.validate(raw(text), self.contract, self.request)

        assert not result.is_valid
        assert any(
            e.code == "schema_error" and "challenge.difficulty" in e.message
            for e in result.hard_errors
        )


class TestNumberShapes:
    """Numeric fields must be finite"""

    def test_finite_values_match(self):
        assert shape_matches(3, FieldShape.NUMBER)
        assert shape_matches(2.5, FieldShape.NUMBER)
        assert shape_matches("4", FieldShape.NUMBER)

    def test_non_finite_values_rejected(self):
        assert not shape_matches(float("inf"), FieldShape.NUMBER)
        assert not shape_matches(float("-inf"), FieldShape.NUMBER)
        assert not shape_matches(float("nan"), FieldShape.NUMBER)
        assert not shape_matches("Infinity", FieldShape.NUMBER)
        assert not shape_matches(True, FieldShape.NUMBER)

    def test_int_conversion_never_raises(self):
        assert _as_int("3.7") == 3
        assert _as_int(float("inf")) is None
        assert _as_int(float("nan")) is None
        assert _as_int(10 ** 400) is None
        assert _as_int("many") is None
