"""
Static fallback content

Served when the device is offline or generation fails and no last-good
cached story fits. Every fallback artifact is flagged is_fallback=True and
its title matches FALLBACK_TITLE_PATTERN.

Stories are chosen by cultural tag: Ghanaian contexts (ghana, ashanti,
kente, ewe, akan) get the Kente weaver story; anything else gets the
generic pattern weaver story.
"""

import re
import uuid
from typing import List, Optional

from codeweaver.models import (
    StoryArtifact,
    StoryRequest,
    BranchStub,
    RequestKind,
    EmotionalTone,
)
from codeweaver.services.text_processing import split_paragraphs

# Every fallback title ends with "Journey"
FALLBACK_TITLE_PATTERN = re.compile(r"Journey$")

GHANA_CONTEXT_TAGS = frozenset(["ghana", "ashanti", "kente", "ewe", "akan", "asante"])

KENTE_STORY_TITLE = "The Kente Weaver's Journey"
GENERIC_STORY_TITLE = "The Pattern Weaver's Journey"
CONTINUATION_TITLE = "Continuing the Journey"

_KENTE_STORY = """In a small village in Ghana, a young weaver named Kofi was learning the art of Kente weaving from his mentor, Master Anansi. Kofi was eager to learn about {concepts} through weaving.

"To create beautiful patterns," Master Anansi explained, "you must understand how to repeat steps in a specific order, just like in coding."

Kofi practiced diligently, creating simple patterns at first. He learned that each thread placement was like a line of code, and the repeated patterns were like loops in programming.

As he improved, Master Anansi taught him more complex techniques. "Now you're ready to learn about conditions," the master said. "Sometimes we change the pattern based on what came before, just like an 'if' statement in coding."

Kofi's final challenge was to create a Kente cloth that told a story through its patterns. He carefully planned his design, thinking about the sequence of steps, the repeated patterns, and the conditional changes.

When he finished, Master Anansi smiled proudly. "You have not only learned to weave Kente, but you have also learned the fundamental concepts of coding. The patterns you create with thread are not so different from the programs you can create with code."

Kofi looked at his creation with new understanding. The beautiful Kente cloth represented both his cultural heritage and his first steps into the world of programming."""

_GENERIC_STORY = """In a busy workshop at the edge of town, a young weaver named Ama sat down at her loom for the first time. Her teacher promised that by the end of the day she would understand {concepts}.

"Every cloth begins with a plan," her teacher said. "First this thread, then the next, always in the right order. A weaver follows steps the way a computer follows code."

Ama wove a simple stripe, then another, then another. "You are repeating the same steps," her teacher noticed. "In coding we call that a loop. It saves us from writing the same instruction again and again."

When the stripes were done, Ama wanted to add a diamond, but only on every third row. "Then you need a decision," her teacher smiled. "If the row is the third one, weave a diamond. Otherwise, weave a stripe. That is a conditional."

By sunset the cloth was finished. Its pattern was a program made of thread: a sequence of steps, loops that repeated them, and choices that changed them.

Ama held it up to the light and grinned. She had started the day as a weaver and ended it as a coder too."""

_CONTINUATION = """{branch_content}

As you continue your journey, you find that the concepts you're learning apply to both weaving and coding. The patterns become more complex, but the fundamental principles remain the same.

You practice creating sequences, using loops to repeat patterns, and applying conditions to create variations. Each new skill builds upon the previous ones, just like in programming.

Master Anansi watches your progress with pride. "You are connecting the ancient art of our ancestors with the modern world of technology," he says. "This is how traditions stay alive and relevant."

By the end of your training, you have created a beautiful cloth that tells your unique story. The patterns of the threads mirror the patterns in code, a beautiful intersection of culture and technology."""

# (choice text, description, content, tone)
_DEFAULT_BRANCHES = [
    (
        "Learn more advanced patterns",
        "Learning advanced patterns",
        "You decide to ask Master Anansi to teach you more advanced patterns that require complex sequences and loops.",
        EmotionalTone.EXCITED,
    ),
    (
        "Create your own unique pattern",
        "Creating your own pattern",
        "You decide to experiment and create your own unique pattern, applying the concepts you've learned in a creative way.",
        EmotionalTone.CURIOUS,
    ),
    (
        "Teach another student",
        "Teaching another student",
        "You decide to share your knowledge by teaching another student the basics of pattern creation and loops.",
        EmotionalTone.HAPPY,
    ),
    (
        "Find the mistake in an old cloth",
        "Debugging a pattern",
        "You notice a faded cloth with one row out of place and decide to trace the steps back until you find where the pattern went wrong.",
        EmotionalTone.DETERMINED,
    ),
    (
        "Visit the market weavers",
        "Comparing patterns at the market",
        "You decide to visit the market and compare how other weavers choose their patterns, noticing which steps they repeat and which they change.",
        EmotionalTone.PLAYFUL,
    ),
]


def is_ghanaian_context(cultural_context: Optional[str]) -> bool:
    if not cultural_context:
        return False
    return any(tag in cultural_context.lower() for tag in GHANA_CONTEXT_TAGS)


def _content_blocks(text: str) -> List[dict]:
    return [{"text": paragraph} for paragraph in split_paragraphs(text)]


def default_story(request: StoryRequest) -> StoryArtifact:
    """Static story for a fresh-story request"""
    concepts = ", ".join(request.learning_concepts)
    ghanaian = is_ghanaian_context(request.cultural_context)
    template = _KENTE_STORY if ghanaian else _GENERIC_STORY

    return StoryArtifact(
        id=f"default_story_{uuid.uuid4().hex[:12]}",
        kind=RequestKind.FRESH,
        title=KENTE_STORY_TITLE if ghanaian else GENERIC_STORY_TITLE,
        theme="cultural",
        region="Ghana" if ghanaian else "General",
        character_name="Kofi" if ghanaian else "Ama",
        content=_content_blocks(template.format(concepts=concepts)),
        cultural_notes={
            "weaving": "Kente weaving in Ghana is a traditional craft with deep cultural significance."
        },
        learning_concepts=list(request.learning_concepts),
        skill_level=request.skill_level,
        emotional_tone=request.emotional_tone or EmotionalTone.NEUTRAL,
        cultural_context=request.cultural_context,
        has_choices=True,
        choice_prompt="What would you like to do next?",
        is_fallback=True,
    )


def default_branches(parent: StoryArtifact, count: int) -> List[BranchStub]:
    """Static branch set; cycles through the templates if count exceeds them"""
    focus = parent.learning_concepts[0] if parent.learning_concepts else "patterns"
    branches = []
    for i in range(count):
        choice_text, description, content, tone = _DEFAULT_BRANCHES[i % len(_DEFAULT_BRANCHES)]
        branches.append(BranchStub(
            id=f"{parent.id}_branch_{i + 1}",
            parent_story_id=parent.id,
            choice_text=choice_text,
            description=description,
            content=content,
            emotional_tone=tone,
            focus_concept=parent.learning_concepts[i % len(parent.learning_concepts)] if parent.learning_concepts else focus,
            learning_concepts=list(parent.learning_concepts),
            skill_level=parent.skill_level,
            cultural_context=parent.cultural_context,
        ))
    return branches


def default_continuation(branch: BranchStub, request: Optional[StoryRequest] = None) -> StoryArtifact:
    """Static continuation of a branch"""
    concepts = list(request.learning_concepts) if request is not None else list(branch.learning_concepts)
    return StoryArtifact(
        id=f"default_continuation_{uuid.uuid4().hex[:12]}",
        kind=RequestKind.CONTINUATION,
        title=CONTINUATION_TITLE,
        theme="cultural",
        region="Ghana",
        character_name="Kofi",
        content=_content_blocks(_CONTINUATION.format(branch_content=branch.content)),
        cultural_notes={"weaving": "Kente weaving traditions are passed down through generations."},
        learning_concepts=concepts or [branch.focus_concept],
        skill_level=branch.skill_level,
        emotional_tone=branch.emotional_tone,
        cultural_context=branch.cultural_context,
        parent_story_id=branch.parent_story_id,
        branch_id=branch.id,
        is_fallback=True,
    )
