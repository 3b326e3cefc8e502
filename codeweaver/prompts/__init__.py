"""
Prompt templates for Codeweaver

Each subpackage holds one template family:
- story: fresh story generation
- branches: branch-set generation after a story
- continuation: continuing a story from a chosen branch
- challenge: continuation that introduces a new coding challenge

Each prompt is a function that accepts pre-formatted context and returns a
prompt string. Output format sections are rendered by the PromptBuilder
from the output contract and passed in verbatim.
"""
