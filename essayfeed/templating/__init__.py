"""
Templating Module.

Merge tag parsing, content resolution and prompt expansion.
"""

from essayfeed.templating.engine import ExpansionResult, TemplateEngine
from essayfeed.templating.modifiers import (
    NO_CONTENT_PLACEHOLDER,
    VARIANT_SEPARATOR,
    apply_modifier,
    apply_modifiers,
)
from essayfeed.templating.parser import MergeTag, MergeTagParser, TagSpec
from essayfeed.templating.resolver import ContentResolver

__all__ = [
    "ContentResolver",
    "ExpansionResult",
    "MergeTag",
    "MergeTagParser",
    "NO_CONTENT_PLACEHOLDER",
    "TagSpec",
    "TemplateEngine",
    "VARIANT_SEPARATOR",
    "apply_modifier",
    "apply_modifiers",
]
