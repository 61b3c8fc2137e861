"""Prompt rendering."""

from .builder import PromptBuilder

__all__ = ["PromptBuilder"]
