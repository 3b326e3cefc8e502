"""
Models package - Pydantic data models for Codeweaver

Re-exports all models for cleaner imports:
    from codeweaver.models import StoryRequest, StoryArtifact, BranchStub
"""

from codeweaver.models.models import *
