"""
Feedback writer.

Persists a finished step output to the store. Content columns are
only ever filled when empty, so human edits are never overwritten,
and paragraph segmentation runs at most once per essay.
"""

import logging
from enum import Enum
from typing import NamedTuple

from essayfeed.feedback.segments import SegmentExtractor
from essayfeed.models import (
    APPLY_TO_ESSAY,
    APPLY_TO_PARAGRAPH,
    SEGMENT_SCOPES,
    Essay,
    Feed,
    content_column_for,
)
from essayfeed.storage.base import EssayStore, StoreError
from essayfeed.templating.modifiers import VARIANT_SEPARATOR

logger = logging.getLogger(__name__)


class WriteOutcome(str, Enum):
    """What a write attempt did."""

    CREATED = "created"
    UPDATED = "updated"
    SEGMENTS_CREATED = "segments_created"
    SKIPPED_EXISTING = "skipped_existing"
    SKIPPED_EMPTY = "skipped_empty"
    SKIPPED_NOT_FOUND = "skipped_not_found"
    UNSUPPORTED = "unsupported"
    FAILED = "failed"


class WriteResult(NamedTuple):
    """Result of a write attempt."""

    outcome: WriteOutcome
    record_id: int | None = None
    segments_created: int = 0

    @property
    def written(self) -> bool:
        """Whether anything was stored."""
        return self.outcome in (
            WriteOutcome.CREATED,
            WriteOutcome.UPDATED,
            WriteOutcome.SEGMENTS_CREATED,
        )


class SubjectRef(NamedTuple):
    """The essay (and optionally one of its segments) a feed runs against."""

    essay_uuid: str
    segment_order: int | None = None


class FeedbackWriter:
    """
    Maps step outputs onto essay, segment and feedback records.

    Data problems (missing essay, store failures) are logged and
    reported through the returned outcome; they are never raised.
    """

    def __init__(self, store: EssayStore, extractor: SegmentExtractor | None = None):
        """
        Initialize the writer.

        Args:
            store: Data store to write to.
            extractor: Segment extractor for paragraph feeds.
        """
        self._store = store
        self._extractor = extractor or SegmentExtractor()

    def save_step_output(
        self,
        subject: SubjectRef,
        feed: Feed,
        step_type: str,
        content: str,
        language: str = "en",
        source: str = "ai",
    ) -> WriteResult:
        """
        Store a step's output for a subject.

        Args:
            subject: Essay (and segment order) the output belongs to.
            feed: Feed that produced the output.
            step_type: Step type; selects the content column.
            content: Finished text.
            language: Feedback language recorded on new rows.
            source: 'ai' or 'human' recorded on new rows.

        Returns:
            The write outcome.
        """
        if not content.strip():
            logger.warning(f"Not storing empty {step_type} output for feed {feed.id}")
            return WriteResult(WriteOutcome.SKIPPED_EMPTY)

        essay = self._store.get_essay_by_uuid(subject.essay_uuid)
        if essay is None:
            logger.warning(f"Essay '{subject.essay_uuid}' not found, skipping write")
            return WriteResult(WriteOutcome.SKIPPED_NOT_FOUND)

        try:
            if feed.apply_to == APPLY_TO_ESSAY:
                return self._save_essay_feedback(
                    essay, feed, step_type, content, language, source
                )
            if feed.apply_to == APPLY_TO_PARAGRAPH:
                return self._save_segments(essay, content)
            if feed.apply_to in SEGMENT_SCOPES:
                return self._save_segment_feedback(
                    essay, subject, feed, step_type, content, language, source
                )
        except StoreError as e:
            logger.error(f"Writing {step_type} output for feed {feed.id} failed: {e}")
            return WriteResult(WriteOutcome.FAILED)

        logger.warning(f"Feed {feed.id} applies to unsupported subject '{feed.apply_to}'")
        return WriteResult(WriteOutcome.UNSUPPORTED)

    def existing_content(self, subject: SubjectRef, feed: Feed, step_type: str) -> str | None:
        """
        Return content already stored for this subject and step, if any.

        For paragraph feeds this is the essay's existing segments, one
        `title` + `content` block per segment.
        """
        essay = self._store.get_essay_by_uuid(subject.essay_uuid)
        if essay is None:
            return None

        column = content_column_for(step_type)
        if feed.apply_to == APPLY_TO_ESSAY:
            rows = self._store.get_essay_feedbacks(
                {"essay_id": essay.id, "feedback_criteria": feed.feedback_criteria}
            )
            return next((r.column_value(column) for r in rows if r.column_value(column)), None)

        if feed.apply_to == APPLY_TO_PARAGRAPH:
            segments = self._store.get_segments({"essay_id": essay.id})
            if not segments:
                return None
            return VARIANT_SEPARATOR.join(f"{s.title}\n{s.content}" for s in segments)

        if feed.apply_to in SEGMENT_SCOPES and subject.segment_order is not None:
            segments = self._store.get_segments(
                {"essay_id": essay.id, "segment_order": subject.segment_order}
            )
            if not segments:
                return None
            rows = self._store.get_segment_feedbacks(
                {"segment_id": segments[0].id, "feedback_criteria": feed.feedback_criteria}
            )
            return next((r.column_value(column) for r in rows if r.column_value(column)), None)

        return None

    def _save_essay_feedback(
        self,
        essay: Essay,
        feed: Feed,
        step_type: str,
        content: str,
        language: str,
        source: str,
    ) -> WriteResult:
        column = content_column_for(step_type)
        rows = self._store.get_essay_feedbacks(
            {"essay_id": essay.id, "feedback_criteria": feed.feedback_criteria}
        )
        if not rows:
            record = self._store.create_essay_feedback(
                essay.id, feed.feedback_criteria, language, source, {column: content}
            )
            logger.info(f"Created essay feedback {record.id} ({column}) for feed {feed.id}")
            return WriteResult(WriteOutcome.CREATED, record.id)

        row = rows[0]
        if row.column_value(column):
            logger.info(f"Essay feedback {row.id} already has {column}, skipping")
            return WriteResult(WriteOutcome.SKIPPED_EXISTING, row.id)

        self._store.update_essay_feedback(row.id, column, content)
        return WriteResult(WriteOutcome.UPDATED, row.id)

    def _save_segments(self, essay: Essay, content: str) -> WriteResult:
        if self._store.get_segments({"essay_id": essay.id}):
            logger.info(f"Essay {essay.id} already has segments, skipping extraction")
            return WriteResult(WriteOutcome.SKIPPED_EXISTING)

        extracted = self._extractor.extract_segments(content)
        for segment in extracted:
            self._store.create_segment(
                essay.id, segment.order, segment.type, segment.title, segment.content
            )
        if not extracted:
            logger.warning(f"No segments could be extracted for essay {essay.id}")
            return WriteResult(WriteOutcome.SKIPPED_EMPTY)

        logger.info(f"Created {len(extracted)} segments for essay {essay.id}")
        return WriteResult(WriteOutcome.SEGMENTS_CREATED, segments_created=len(extracted))

    def _save_segment_feedback(
        self,
        essay: Essay,
        subject: SubjectRef,
        feed: Feed,
        step_type: str,
        content: str,
        language: str,
        source: str,
    ) -> WriteResult:
        if subject.segment_order is None:
            logger.warning(f"Feed {feed.id} needs a segment order to write segment feedback")
            return WriteResult(WriteOutcome.SKIPPED_NOT_FOUND)

        segments = self._store.get_segments(
            {"essay_id": essay.id, "segment_order": subject.segment_order}
        )
        if not segments:
            logger.warning(
                f"Essay {essay.id} has no segment with order {subject.segment_order}"
            )
            return WriteResult(WriteOutcome.SKIPPED_NOT_FOUND)

        segment = segments[0]
        column = content_column_for(step_type)
        rows = self._store.get_segment_feedbacks(
            {"segment_id": segment.id, "feedback_criteria": feed.feedback_criteria}
        )
        if not rows:
            record = self._store.create_segment_feedback(
                segment.id, feed.feedback_criteria, language, source, {column: content}
            )
            return WriteResult(WriteOutcome.CREATED, record.id)

        row = rows[0]
        if row.column_value(column):
            logger.info(f"Segment feedback {row.id} already has {column}, skipping")
            return WriteResult(WriteOutcome.SKIPPED_EXISTING, row.id)

        self._store.update_segment_feedback(row.id, column, content)
        return WriteResult(WriteOutcome.UPDATED, row.id)
