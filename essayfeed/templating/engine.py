"""
Template engine for feed prompts.

Expands merge tags in a prompt into literal text. When any tag
resolves to a list the prompt fans out into one variant per list
position, truncated to the shortest list.
"""

import logging
import re
from typing import Any, NamedTuple

from essayfeed.models import ExpansionContext
from essayfeed.templating.modifiers import as_text
from essayfeed.templating.parser import MergeTag, MergeTagParser
from essayfeed.templating.resolver import ContentResolver, is_empty

logger = logging.getLogger(__name__)

GUIDANCE_PARAMS = ("feedback_style", "guide_score", "guide_feedback")

_TARGET_SCORE_CONDITIONAL = re.compile(r"^target_score:if\[(.+?)\]then\[(.+?)\]$", re.DOTALL)
_SCORE_CONDITION = re.compile(r"^(>=|<=|>|<|!=|==)?\s*(\d+(?:\.\d+)?)$")


class ExpansionResult(NamedTuple):
    """Outcome of expanding one prompt."""

    prompts: list[str]
    is_parallel: bool
    resolved: dict[str, Any]


def evaluate_score_condition(score: float, condition: str) -> bool:
    """
    Evaluate a condition such as '>=7' or '6.5' against a score.

    A bare number compares for equality; anything unparseable is False.
    """
    match = _SCORE_CONDITION.match(condition.strip())
    if not match:
        return False
    operator = match.group(1) or "=="
    value = float(match.group(2))
    if operator == ">=":
        return score >= value
    if operator == "<=":
        return score <= value
    if operator == ">":
        return score > value
    if operator == "<":
        return score < value
    if operator == "!=":
        return score != value
    return score == value


def _format_score(score: float) -> str:
    return str(int(score)) if float(score).is_integer() else str(score)


class TemplateEngine:
    """
    Expands `{prefix|params|suffix}` merge tags.

    Each distinct tag is resolved exactly once per expansion; scalar
    values are reused across every variant.
    """

    def __init__(self, resolver: ContentResolver, parser: MergeTagParser | None = None):
        """
        Initialize the engine.

        Args:
            resolver: Resolver used for `table:field` tags.
            parser: Merge tag parser. A default parser is used if not provided.
        """
        self._resolver = resolver
        self._parser = parser or MergeTagParser()

    def expand(self, prompt: str, ctx: ExpansionContext) -> str | list[str]:
        """
        Expand a prompt.

        Args:
            prompt: Prompt text possibly containing merge tags.
            ctx: Expansion context for the essay being processed.

        Returns:
            The expanded prompt, or a list of variants when any tag
            resolved to a list.
        """
        result = self.expand_structured(prompt, ctx)
        return result.prompts if result.is_parallel else result.prompts[0]

    def expand_structured(self, prompt: str, ctx: ExpansionContext) -> ExpansionResult:
        """Expand a prompt and report how each distinct tag resolved."""
        tags = self._parser.parse(prompt)
        if not tags:
            return ExpansionResult(prompts=[prompt], is_parallel=False, resolved={})

        resolved: dict[str, Any] = {}
        for tag in tags:
            if tag.raw not in resolved:
                resolved[tag.raw] = self._resolve_tag(tag, ctx)

        array_lengths = [len(v) for v in resolved.values() if isinstance(v, list)]
        if not array_lengths:
            return ExpansionResult(
                prompts=[self._substitute(prompt, tags, resolved, None)],
                is_parallel=False,
                resolved=resolved,
            )

        count = min(array_lengths)
        logger.debug(f"Prompt fans out into {count} variants")
        variants = [self._substitute(prompt, tags, resolved, i) for i in range(count)]
        return ExpansionResult(prompts=variants, is_parallel=True, resolved=resolved)

    def _resolve_tag(self, tag: MergeTag, ctx: ExpansionContext) -> Any:
        params = tag.params.strip()

        if params in GUIDANCE_PARAMS:
            value = getattr(ctx, params)
            return value if value.strip() else None

        if params.startswith("target_score") and ctx.target_score is not None:
            return self._resolve_target_score(params, ctx.target_score)

        spec = self._parser.parse_spec(params)
        if spec is None:
            return None
        content = self._resolver.resolve(spec, ctx)
        if isinstance(content, list) and not content:
            return None
        return content

    @staticmethod
    def _resolve_target_score(params: str, target_score: float) -> str | None:
        if params == "target_score":
            return _format_score(target_score)
        match = _TARGET_SCORE_CONDITIONAL.match(params)
        if not match:
            return _format_score(target_score)
        condition, then_text = match.groups()
        return then_text if evaluate_score_condition(target_score, condition) else None

    @staticmethod
    def _substitute(
        prompt: str, tags: list[MergeTag], resolved: dict[str, Any], index: int | None
    ) -> str:
        parts: list[str] = []
        cursor = 0
        for tag in tags:
            parts.append(prompt[cursor : tag.start])
            value = resolved[tag.raw]
            if isinstance(value, list):
                parts.append(f"{tag.prefix}{as_text(value[index])}{tag.suffix}")
            elif not is_empty(value):
                parts.append(f"{tag.prefix}{as_text(value)}{tag.suffix}")
            cursor = tag.end
        parts.append(prompt[cursor:])
        return "".join(parts)
