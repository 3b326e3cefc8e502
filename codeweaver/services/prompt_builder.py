"""
Prompt Builder

Turns a StoryRequest into a PromptSpec: prompt text plus the output contract
the response must satisfy. Pure and deterministic; the same request always
yields byte-identical prompt text.

Template selection:
    fresh                         -> story
    branch_set                    -> branches
    continuation                  -> continuation
    continuation + challenge flag -> challenge

The output contract is rendered into the prompt's OUTPUT FORMAT section and
handed to the ContentValidator unchanged.
"""

import json
import logging
from typing import Dict, Any

from codeweaver.config.limits import (
    STORY_MIN_WORDS,
    STORY_MAX_WORDS,
    SIMPLIFIED_STORY_MIN_WORDS,
    BRANCH_MIN_WORDS,
    BRANCH_MAX_WORDS,
    CONTINUATION_MIN_WORDS,
    CONTINUATION_MAX_WORDS,
)
from codeweaver.models import (
    StoryRequest,
    RequestKind,
    TemplateKind,
    FieldShape,
    OutputContract,
    PromptSpec,
    EmotionalTone,
)
from codeweaver.prompts.story import get_story_prompt, get_simplified_story_prompt
from codeweaver.prompts.branches import get_branches_prompt, get_simplified_branches_prompt
from codeweaver.prompts.continuation import get_continuation_prompt, get_simplified_continuation_prompt
from codeweaver.prompts.challenge import get_challenge_prompt, BLOCK_TYPE_DESCRIPTIONS

logger = logging.getLogger(__name__)

DEFAULT_CULTURAL_CONTEXT = "general"
DEFAULT_THEME_TEXT = "Choose an appropriate theme"
DEFAULT_CHARACTER_TEXT = "Create a relatable character"
FIRST_STORY_TEXT = "This is the learner's first story."

# Simplified retry prompts see only the tail of long histories
SIMPLIFIED_HISTORY_CHARS = 800

# Example values shown in the OUTPUT FORMAT section, keyed by JSON field path
FIELD_EXAMPLES: Dict[str, Any] = {
    "title": "Story title",
    "theme": "Story theme (e.g., 'loops', 'conditionals', 'cultural')",
    "region": "Cultural region (e.g., 'Ashanti', 'Ghana')",
    "characterName": "Main character name",
    "content": "Full story content with paragraphs separated by blank lines",
    "hasChoices": "true or false (whether the story should have branching choices)",
    "choicePrompt": "Text prompting the learner to make a choice (if hasChoices is true)",
    "culturalNotes": {"key1": "Cultural note 1", "key2": "Cultural note 2"},
    "choiceText": "Short text describing the choice (e.g., 'Follow the river')",
    "description": "Brief description of this branch path",
    "emotionalTone": "One of: " + ", ".join(t.value for t in EmotionalTone),
    "focusConcept": "Main concept this branch focuses on (from the learning concepts)",
    "challenge.title": "Challenge title",
    "challenge.description": "Challenge description (instructions for the learner)",
    "challenge.difficulty": "1-5 (matching the skill level)",
    "challenge.availableBlockTypes": list(BLOCK_TYPE_DESCRIPTIONS),
    "challenge.successCriteria": {
        "requiredBlockTypes": ["move", "repeat"],
        "minBlocks": 5,
        "maxBlocks": 15,
    },
}


# =========================================================================
# OUTPUT CONTRACTS
# =========================================================================

def _story_contract(simplified: bool) -> OutputContract:
    if simplified:
        return OutputContract(
            response_kind=TemplateKind.STORY,
            required_fields={"title": FieldShape.STRING, "content": FieldShape.STRING},
            narrative_fields=["content"],
            min_words=SIMPLIFIED_STORY_MIN_WORDS,
            max_words=STORY_MAX_WORDS,
        )
    return OutputContract(
        response_kind=TemplateKind.STORY,
        required_fields={
            "title": FieldShape.STRING,
            "content": FieldShape.STRING,
            "theme": FieldShape.STRING,
            "characterName": FieldShape.STRING,
        },
        optional_fields={
            "region": FieldShape.STRING,
            "hasChoices": FieldShape.BOOLEAN,
            "choicePrompt": FieldShape.STRING,
            "culturalNotes": FieldShape.OBJECT,
        },
        narrative_fields=["content"],
        min_words=STORY_MIN_WORDS,
        max_words=STORY_MAX_WORDS,
    )


def _branches_contract(count: int, simplified: bool) -> OutputContract:
    if simplified:
        return OutputContract(
            response_kind=TemplateKind.BRANCHES,
            root_is_array=True,
            required_fields={"choiceText": FieldShape.STRING, "content": FieldShape.STRING},
            optional_fields={"emotionalTone": FieldShape.STRING, "focusConcept": FieldShape.STRING},
            narrative_fields=["content"],
            min_words=BRANCH_MIN_WORDS,
            max_words=BRANCH_MAX_WORDS,
            expected_items=count,
        )
    return OutputContract(
        response_kind=TemplateKind.BRANCHES,
        root_is_array=True,
        required_fields={
            "choiceText": FieldShape.STRING,
            "content": FieldShape.STRING,
            "emotionalTone": FieldShape.STRING,
            "focusConcept": FieldShape.STRING,
        },
        optional_fields={"description": FieldShape.STRING},
        narrative_fields=["content"],
        min_words=BRANCH_MIN_WORDS,
        max_words=BRANCH_MAX_WORDS,
        expected_items=count,
    )


def _continuation_contract(simplified: bool) -> OutputContract:
    optional = {} if simplified else {
        "culturalNotes": FieldShape.OBJECT,
        "hasChoices": FieldShape.BOOLEAN,
        "choicePrompt": FieldShape.STRING,
    }
    return OutputContract(
        response_kind=TemplateKind.CONTINUATION,
        required_fields={"title": FieldShape.STRING, "content": FieldShape.STRING},
        optional_fields=optional,
        narrative_fields=["content"],
        min_words=CONTINUATION_MIN_WORDS // 2 if simplified else CONTINUATION_MIN_WORDS,
        max_words=CONTINUATION_MAX_WORDS,
    )


def _challenge_contract(simplified: bool) -> OutputContract:
    contract = _continuation_contract(simplified)
    required = dict(contract.required_fields)
    required.update({
        "challenge.title": FieldShape.STRING,
        "challenge.description": FieldShape.STRING,
        "challenge.difficulty": FieldShape.NUMBER,
        "challenge.availableBlockTypes": FieldShape.LIST,
    })
    optional = dict(contract.optional_fields)
    if not simplified:
        optional["challenge.successCriteria"] = FieldShape.OBJECT
    return contract.model_copy(update={
        "response_kind": TemplateKind.CHALLENGE,
        "required_fields": required,
        "optional_fields": optional,
    })


# =========================================================================
# OUTPUT FORMAT RENDERING
# =========================================================================

def _set_path(target: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def render_output_format(contract: OutputContract) -> str:
    """
    Render an output contract as the prompt's OUTPUT FORMAT section.

    Lists every required field with its expected shape so the generator and
    the validator work from the same definition.
    """
    example: Dict[str, Any] = {}
    for path in list(contract.required_fields) + list(contract.optional_fields):
        _set_path(example, path, FIELD_EXAMPLES.get(path, f"<{path}>"))

    if contract.root_is_array:
        count = contract.expected_items or 1
        intro = f"Format your response as a JSON array of exactly {count} objects, each with the following structure:"
        example_json = json.dumps([example], indent=2, ensure_ascii=False)
    else:
        intro = "Format your response as a JSON object with the following structure:"
        example_json = json.dumps(example, indent=2, ensure_ascii=False)

    required_lines = "\n".join(
        f"- {path}: {shape.value}" for path, shape in contract.required_fields.items()
    )
    narrative = ", ".join(contract.narrative_fields)

    return f"""OUTPUT FORMAT:
{intro}
{example_json}

REQUIRED FIELDS (a response missing any of these is rejected):
{required_lines}

LENGTH: {narrative} must be {contract.min_words}-{contract.max_words} words."""


# =========================================================================
# PROMPT BUILDER
# =========================================================================

class PromptBuilder:
    """
    Deterministic request -> PromptSpec transformation.

    Attributes:
        max_output_tokens: Token limit passed to the generator
        temperature: Sampling temperature passed to the generator
    """

    def __init__(self, max_output_tokens: int = 2048, temperature: float = 0.7):
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature

    @staticmethod
    def template_for(request: StoryRequest) -> TemplateKind:
        if request.kind == RequestKind.BRANCH_SET:
            return TemplateKind.BRANCHES
        if request.kind == RequestKind.CONTINUATION:
            return TemplateKind.CHALLENGE if request.introduce_challenge else TemplateKind.CONTINUATION
        return TemplateKind.STORY

    def contract_for(self, request: StoryRequest, simplified: bool = False) -> OutputContract:
        template = self.template_for(request)
        if template == TemplateKind.BRANCHES:
            return _branches_contract(request.branch_count, simplified)
        if template == TemplateKind.CHALLENGE:
            return _challenge_contract(simplified)
        if template == TemplateKind.CONTINUATION:
            return _continuation_contract(simplified)
        return _story_contract(simplified)

    def build(self, request: StoryRequest, simplified: bool = False) -> PromptSpec:
        """
        Build the prompt for a request.

        Args:
            request: Generation request
            simplified: Build the reduced prompt used for the single retry

        Returns:
            PromptSpec with prompt text and output contract
        """
        template = self.template_for(request)
        contract = self.contract_for(request, simplified)
        output_format = render_output_format(contract)

        concepts_text = ", ".join(request.learning_concepts)
        skill_level_text = request.skill_level.value
        tone = (request.emotional_tone or EmotionalTone.NEUTRAL).value
        culture = request.cultural_context or DEFAULT_CULTURAL_CONTEXT
        history = request.narrative_history

        if template == TemplateKind.STORY:
            if simplified:
                text = get_simplified_story_prompt(
                    concepts_text=concepts_text,
                    skill_level_text=skill_level_text,
                    cultural_context=culture,
                    output_format=output_format,
                    min_words=contract.min_words,
                    max_words=contract.max_words,
                )
            else:
                text = get_story_prompt(
                    concepts_text=concepts_text,
                    skill_level_text=skill_level_text,
                    emotional_tone=tone,
                    cultural_context=culture,
                    history_text=history or FIRST_STORY_TEXT,
                    character_text=(
                        f"Character name: {request.character_name}"
                        if request.character_name else DEFAULT_CHARACTER_TEXT
                    ),
                    theme_text=f"Theme: {request.theme}" if request.theme else DEFAULT_THEME_TEXT,
                    output_format=output_format,
                    min_words=contract.min_words,
                    max_words=contract.max_words,
                )

        elif template == TemplateKind.BRANCHES:
            parent_text = history or f"Parent story: {request.parent_story_id or 'untitled'}"
            if simplified:
                text = get_simplified_branches_prompt(
                    parent_summary=parent_text[-SIMPLIFIED_HISTORY_CHARS:],
                    concepts_text=concepts_text,
                    choice_count=request.branch_count,
                    output_format=output_format,
                )
            else:
                text = get_branches_prompt(
                    parent_story_text=parent_text,
                    concepts_text=concepts_text,
                    skill_level_text=skill_level_text,
                    cultural_context=culture,
                    choice_count=request.branch_count,
                    output_format=output_format,
                    min_words=contract.min_words,
                    max_words=contract.max_words,
                )

        else:
            branch_text = history or f"Selected branch: {request.branch_id}"
            if simplified:
                text = get_simplified_continuation_prompt(
                    branch_text=branch_text[-SIMPLIFIED_HISTORY_CHARS:],
                    concepts_text=concepts_text,
                    output_format=output_format,
                    min_words=contract.min_words,
                    max_words=contract.max_words,
                )
            elif template == TemplateKind.CHALLENGE:
                text = get_challenge_prompt(
                    branch_text=branch_text,
                    concepts_text=concepts_text,
                    emotional_tone=tone,
                    skill_level_text=skill_level_text,
                    difficulty=request.skill_level.difficulty,
                    cultural_context=culture,
                    output_format=output_format,
                    min_words=contract.min_words,
                    max_words=contract.max_words,
                )
            else:
                text = get_continuation_prompt(
                    branch_text=branch_text,
                    concepts_text=concepts_text,
                    emotional_tone=tone,
                    skill_level_text=skill_level_text,
                    cultural_context=culture,
                    output_format=output_format,
                    min_words=contract.min_words,
                    max_words=contract.max_words,
                )

        logger.debug(f"Built {template.value} prompt ({len(text)} chars, simplified={simplified})")

        return PromptSpec(
            template=template,
            text=text,
            contract=contract,
            max_output_tokens=self.max_output_tokens,
            temperature=self.temperature,
            simplified=simplified,
        )
