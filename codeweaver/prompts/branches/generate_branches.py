"""
Branch Generation Prompt

Creates a set of narrative choices that could follow a parent story, each
continuing to teach the parent's learning concepts.
"""


def get_branches_prompt(
    parent_story_text: str,
    concepts_text: str,
    skill_level_text: str,
    cultural_context: str,
    choice_count: int,
    output_format: str,
    min_words: int,
    max_words: int,
) -> str:
    """
    Generate the branch creation prompt.

    Args:
        parent_story_text: Title and content of the parent story
        concepts_text: Comma-separated learning concepts
        skill_level_text: Skill level name (beginner..expert)
        cultural_context: Cultural context tag
        choice_count: Exact number of branches to generate
        output_format: Rendered output contract
        min_words: Lower word bound for each branch's content
        max_words: Upper word bound for each branch's content

    Returns:
        Formatted prompt string for branch generation
    """
    return f"""You are creating branching choices for an educational story about coding concepts through Kente weaving.

STORY CONTEXT:
{parent_story_text}

- Learning concepts: {concepts_text}
- Skill level: {skill_level_text}
- Cultural context: {cultural_context}
- Number of choices to generate: {choice_count}

BRANCH REQUIREMENTS:
Create exactly {choice_count} different story branches that could follow from this story. Each branch should:
1. Start with a clear choice the learner can make
2. Continue the story in a different direction
3. Still teach the same learning concepts
4. Maintain cultural relevance to Kente weaving
5. Have a different emotional tone if possible
6. Be appropriate for the learner's skill level

EDUCATIONAL APPROACH:
- Each branch should continue teaching the learning concepts
- Different branches can emphasize different aspects of the concepts
- Maintain the metaphor of Kente weaving for coding concepts
- Adapt difficulty based on the branch chosen (some can be more challenging)

{output_format}

Each branch's content should be {min_words}-{max_words} words.
Make each branch distinct and interesting, with different potential outcomes.
Respond with the JSON array only."""


def get_simplified_branches_prompt(
    parent_summary: str,
    concepts_text: str,
    choice_count: int,
    output_format: str,
) -> str:
    """Generate the reduced branch prompt used for the single retry."""
    return f"""This story is about Kente weaving and coding:

{parent_summary}

Write exactly {choice_count} short choices for what happens next. Each choice must mention at least one of: {concepts_text}

{output_format}

Respond with the JSON array only, with no text before or after it."""
