"""
Essay Feed - LLM-backed essay feedback orchestration.

This package expands templated prompts against stored essay data,
dispatches them to language-model providers (streamed or pooled),
and persists the generated feedback with only-if-empty semantics.
"""

__version__ = "1.0.0"
__author__ = "Essay Feed Team"
