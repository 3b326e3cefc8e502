"""
Story Generation Prompt

Creates an educational story that teaches coding concepts through the lens
of Kente weaving. Also provides the simplified variant used when the first
response fails validation.
"""


def get_story_prompt(
    concepts_text: str,
    skill_level_text: str,
    emotional_tone: str,
    cultural_context: str,
    history_text: str,
    character_text: str,
    theme_text: str,
    output_format: str,
    min_words: int,
    max_words: int,
) -> str:
    """
    Generate the story creation prompt.

    Args:
        concepts_text: Comma-separated learning concepts
        skill_level_text: Skill level name (beginner..expert)
        emotional_tone: Emotional tone name
        cultural_context: Cultural context tag
        history_text: Previous narrative, or the first-story note
        character_text: Character name line or "Create a relatable character"
        theme_text: Theme line or "Choose an appropriate theme"
        output_format: Rendered output contract
        min_words: Lower word bound for the story content
        max_words: Upper word bound for the story content

    Returns:
        Formatted prompt string for story generation
    """
    return f"""You are an expert storyteller creating an educational story about coding concepts through the lens of Kente weaving from Ghana.

EDUCATIONAL PARAMETERS:
- Learning concepts to focus on: {concepts_text}
- Skill level: {skill_level_text}
- Emotional tone: {emotional_tone}
- Cultural context: {cultural_context}
- {character_text}
- {theme_text}

PREVIOUS NARRATIVE:
{history_text}

STORY REQUIREMENTS:
Create an engaging, culturally rich story that teaches the specified learning concepts. The story should be appropriate for the learner's skill level, not mentioning age but focusing on their coding knowledge. Incorporate the cultural context naturally into the narrative.

The story should have the following elements:
1. A clear beginning, middle, and end
2. Characters that the reader can relate to
3. A problem or challenge related to the learning concepts
4. A resolution that demonstrates the learning concepts
5. Cultural elements that enrich the story
6. An emotional tone that matches the specified tone

STORY STRUCTURE:
- 2-3 paragraphs for introduction/context setting
- 3-5 paragraphs for concept development through narrative
- 1-2 paragraphs for challenge introduction
- 2-3 paragraphs for conclusion/reflection
Separate paragraphs with a blank line.

EDUCATIONAL APPROACH:
- Teach coding concepts subtly through the narrative
- Use Kente weaving as a metaphor for coding concepts
- Name every learning concept (or a closely related word) at least once in the story
- Avoid explicit instruction; instead, show concepts in action
- Make connections between patterns in weaving and patterns in code

{output_format}

Make the story approximately {min_words}-{max_words} words long, engaging, and educational.
Respond with the JSON object only."""


def get_simplified_story_prompt(
    concepts_text: str,
    skill_level_text: str,
    cultural_context: str,
    output_format: str,
    min_words: int,
    max_words: int,
) -> str:
    """
    Generate the reduced story prompt used for the single retry.

    Drops the optional personalisation and structure guidance so the
    generator only has to satisfy the minimal contract.
    """
    return f"""Write a short educational story for a {skill_level_text} coder about Kente weaving in a {cultural_context} setting.

The story MUST use these words (or close relatives of them): {concepts_text}

{output_format}

Keep the story between {min_words} and {max_words} words.
Respond with the JSON object only, with no text before or after it."""
