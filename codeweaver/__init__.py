"""Codeweaver - AI narrative generation for coding-concept stories"""

__version__ = "0.1.0"
