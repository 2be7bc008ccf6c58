"""
Content resolver for merge tag specs.

Looks up the value a `table:field[filter]:modifiers` spec refers to,
always scoped to the essay being processed, and pipes non-empty
results through the modifier chain.
"""

import logging
from typing import Any

from pydantic import BaseModel

from essayfeed.models import Essay, ExpansionContext
from essayfeed.storage.base import EssayStore
from essayfeed.templating.modifiers import apply_modifiers
from essayfeed.templating.parser import TagSpec

logger = logging.getLogger(__name__)

WHOLE_RECORD_FIELD = "*"


def is_empty(value: Any) -> bool:
    """Whether a resolved value counts as no content."""
    if value is None:
        return True
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def _field_value(record: BaseModel, field: str) -> Any:
    if field == WHOLE_RECORD_FIELD:
        return record.model_dump(mode="json")
    return getattr(record, field, None)


class ContentResolver:
    """
    Resolves merge tag specs against an essay store.

    A single matching record yields a scalar and several yield a list.
    Essay feedback yields the first non-empty value. A pinned segment
    order narrows segment tables to that one segment.
    """

    SUPPORTED_TABLES = frozenset({"essay", "segment", "essay_feedback", "segment_feedback"})

    def __init__(self, store: EssayStore):
        """
        Initialize the resolver.

        Args:
            store: Data store to query.
        """
        self._store = store

    def resolve(self, spec: TagSpec, ctx: ExpansionContext) -> Any:
        """
        Resolve a spec for the essay in `ctx`.

        Args:
            spec: Parsed merge tag spec.
            ctx: Expansion context carrying the essay uuid and segment order.

        Returns:
            A scalar, a non-empty list, or None when nothing was found.
        """
        if spec.table not in self.SUPPORTED_TABLES:
            logger.debug(f"Unsupported merge tag table '{spec.table}'")
            return None
        if not ctx.essay_uuid:
            return None

        extra_filter = self._extra_filter(spec, ctx)
        if spec.table == "essay":
            content = self._resolve_essay(spec, ctx, extra_filter)
        else:
            essay = self._store.get_essay_by_uuid(ctx.essay_uuid)
            if essay is None:
                logger.debug(f"Essay '{ctx.essay_uuid}' not found while resolving {spec.table}")
                return None
            if spec.table == "segment":
                content = self._resolve_segment(spec, ctx, essay, extra_filter)
            elif spec.table == "essay_feedback":
                content = self._resolve_essay_feedback(spec, essay, extra_filter)
            else:
                content = self._resolve_segment_feedback(spec, ctx, essay, extra_filter)

        if is_empty(content):
            return None
        if spec.modifiers:
            content = apply_modifiers(content, spec.modifiers)
        return None if is_empty(content) else content

    @staticmethod
    def _extra_filter(spec: TagSpec, ctx: ExpansionContext) -> dict[str, Any]:
        if not spec.filter_field or spec.filter_value is None:
            return {}
        value = ctx.essay_uuid if spec.filter_value == "uuid" else spec.filter_value
        return {spec.filter_field: value}

    @staticmethod
    def _collapse(values: list[Any]) -> Any:
        if not values:
            return None
        if len(values) == 1:
            return values[0]
        return values

    def _resolve_essay(
        self, spec: TagSpec, ctx: ExpansionContext, extra_filter: dict[str, Any]
    ) -> Any:
        filters: dict[str, Any] = {"uuid": ctx.essay_uuid}
        for name, value in extra_filter.items():
            if name != "uuid":
                filters[name] = value
        essays = self._store.get_essays(filters)
        return self._collapse([_field_value(e, spec.field) for e in essays])

    def _resolve_segment(
        self, spec: TagSpec, ctx: ExpansionContext, essay: Essay, extra_filter: dict[str, Any]
    ) -> Any:
        filters: dict[str, Any] = {"essay_id": essay.id}
        if ctx.segment_order is not None:
            filters["segment_order"] = ctx.segment_order
        filters.update(extra_filter)
        values = [_field_value(s, spec.field) for s in self._store.get_segments(filters)]
        return self._collapse(values)

    def _resolve_essay_feedback(
        self, spec: TagSpec, essay: Essay, extra_filter: dict[str, Any]
    ) -> Any:
        filters: dict[str, Any] = {"essay_id": essay.id, **extra_filter}
        for feedback in self._store.get_essay_feedbacks(filters):
            value = _field_value(feedback, spec.field)
            if not is_empty(value):
                return value
        return None

    def _resolve_segment_feedback(
        self, spec: TagSpec, ctx: ExpansionContext, essay: Essay, extra_filter: dict[str, Any]
    ) -> Any:
        segment_filters: dict[str, Any] = {"essay_id": essay.id}
        if ctx.segment_order is not None:
            segment_filters["segment_order"] = ctx.segment_order

        values: list[Any] = []
        for segment in self._store.get_segments(segment_filters):
            feedbacks = self._store.get_segment_feedbacks(
                {"segment_id": segment.id, **extra_filter}
            )
            for feedback in feedbacks:
                value = _field_value(feedback, spec.field)
                if not is_empty(value):
                    values.append(value)
                    break

        return self._collapse(values)
