"""Feedback generation: orchestration, scoring, segment extraction and write-back."""

from essayfeed.feedback.orchestrator import FeedbackOrchestrator
from essayfeed.feedback.scoring import ScoringError, compile_score_pattern, extract_score
from essayfeed.feedback.segments import SegmentExtractor, determine_segment_type
from essayfeed.feedback.writer import FeedbackWriter, SubjectRef, WriteOutcome, WriteResult

__all__ = [
    "FeedbackOrchestrator",
    "ScoringError",
    "compile_score_pattern",
    "extract_score",
    "SegmentExtractor",
    "determine_segment_type",
    "FeedbackWriter",
    "SubjectRef",
    "WriteOutcome",
    "WriteResult",
]
