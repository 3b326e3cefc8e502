"""
Story Continuation Prompt

Continues an educational story from the branch the learner selected.
"""


def get_continuation_prompt(
    branch_text: str,
    concepts_text: str,
    emotional_tone: str,
    skill_level_text: str,
    cultural_context: str,
    output_format: str,
    min_words: int,
    max_words: int,
) -> str:
    """
    Generate the continuation prompt.

    Args:
        branch_text: Selected branch choice and content
        concepts_text: Comma-separated learning concepts
        emotional_tone: Tone of the selected branch
        skill_level_text: Skill level name (beginner..expert)
        cultural_context: Cultural context tag
        output_format: Rendered output contract
        min_words: Lower word bound for the continuation content
        max_words: Upper word bound for the continuation content

    Returns:
        Formatted prompt string for story continuation
    """
    return f"""You are continuing an educational story about coding concepts through Kente weaving based on a learner's choice.

BRANCH CONTEXT:
{branch_text}

- Learning concepts: {concepts_text}
- Emotional tone: {emotional_tone}
- Skill level: {skill_level_text}
- Cultural context: {cultural_context}

CONTINUATION REQUIREMENTS:
Continue the story based on the selected branch. The continuation should:
1. Flow naturally from the branch content
2. Develop the story further with a clear middle and end
3. Reinforce the learning concepts
4. Maintain the emotional tone
5. Keep the cultural context of Kente weaving
6. Be appropriate for the learner's skill level

STORY STRUCTURE:
- 1-2 paragraphs for continuing from the branch choice
- 3-4 paragraphs for concept development through narrative
- 2-3 paragraphs for conclusion/reflection
Separate paragraphs with a blank line.

EDUCATIONAL APPROACH:
- Continue teaching coding concepts subtly through the narrative
- Use Kente weaving as a metaphor for coding concepts
- Name every learning concept (or a closely related word) at least once
- Make connections between patterns in weaving and patterns in code

{output_format}

Make the continuation {min_words}-{max_words} words, engaging, educational, and satisfying.
Respond with the JSON object only."""


def get_simplified_continuation_prompt(
    branch_text: str,
    concepts_text: str,
    output_format: str,
    min_words: int,
    max_words: int,
) -> str:
    """Generate the reduced continuation prompt used for the single retry."""
    return f"""Continue this Kente weaving story:

{branch_text}

The continuation MUST use these words (or close relatives of them): {concepts_text}

{output_format}

Keep it between {min_words} and {max_words} words.
Respond with the JSON object only, with no text before or after it."""
