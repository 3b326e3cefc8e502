"""
Challenge Continuation Prompt

Continues a story from the selected branch and introduces a block-coding
challenge tied to the narrative.
"""

# Block types the learner can use in challenges
BLOCK_TYPE_DESCRIPTIONS = {
    "move": "Moves the weaver forward",
    "turn": "Changes direction",
    "repeat": "Repeats a sequence of actions",
    "if": "Conditional logic",
    "variable": "Stores and uses values",
    "function": "Defines reusable patterns",
}


def get_challenge_prompt(
    branch_text: str,
    concepts_text: str,
    emotional_tone: str,
    skill_level_text: str,
    difficulty: int,
    cultural_context: str,
    output_format: str,
    min_words: int,
    max_words: int,
) -> str:
    """
    Generate the challenge continuation prompt.

    Args:
        branch_text: Selected branch choice and content
        concepts_text: Comma-separated learning concepts
        emotional_tone: Tone of the selected branch
        skill_level_text: Skill level name (beginner..expert)
        difficulty: Challenge difficulty on the 1-5 scale
        cultural_context: Cultural context tag
        output_format: Rendered output contract
        min_words: Lower word bound for the continuation content
        max_words: Upper word bound for the continuation content

    Returns:
        Formatted prompt string for a continuation with a challenge
    """
    block_lines = "\n".join(
        f"- {name}: {description}" for name, description in BLOCK_TYPE_DESCRIPTIONS.items()
    )

    return f"""You are continuing an educational story about coding concepts through Kente weaving, and introducing a coding challenge based on the learner's choice.

BRANCH CONTEXT:
{branch_text}

- Learning concepts: {concepts_text}
- Emotional tone: {emotional_tone}
- Skill level: {skill_level_text}
- Cultural context: {cultural_context}

CONTINUATION REQUIREMENTS:
1. Flow naturally from the branch content
2. Reinforce the learning concepts
3. Keep the cultural context of Kente weaving
4. End by introducing the challenge as part of the story

CHALLENGE REQUIREMENTS:
Create a coding challenge that:
1. Relates directly to the story
2. Tests the learner's understanding of the learning concepts
3. Has difficulty {difficulty} on a 1-5 scale
4. Incorporates Kente weaving patterns
5. Has clear success criteria

AVAILABLE BLOCK TYPES:
{block_lines}

{output_format}

Make the continuation {min_words}-{max_words} words, and make the challenge engaging and directly connected to the story.
Respond with the JSON object only."""
