"""
Pydantic models for the feedback orchestrator.

These models define the schemas for:
- Essay, segment and feedback records exchanged with the data store
- Feeds, steps and their typed per-step configuration
- Expansion context, processing options and run results

Configuration models are frozen and strict; store records are frozen
and updated by copy.
"""

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==============================================================================
# Step Types and Scopes
# ==============================================================================

STEP_CHAIN_OF_THOUGHT = "chain-of-thought"
STEP_SCORING = "scoring"
STEP_FEEDBACK = "feedback"

APPLY_TO_ESSAY = "essay"
APPLY_TO_PARAGRAPH = "paragraph"
SEGMENT_SCOPES = frozenset({"introduction", "topic-sentence", "main-point", "conclusion"})

CONTENT_COLUMNS = ("cot_content", "score_content", "feedback_content")


def content_column_for(step_type: str) -> str:
    """Map a step type to the feedback column its output is stored in."""
    if step_type == STEP_CHAIN_OF_THOUGHT:
        return "cot_content"
    if step_type == STEP_SCORING:
        return "score_content"
    return "feedback_content"


# ==============================================================================
# Store Records
# ==============================================================================


class Essay(BaseModel):
    """An essay submitted for feedback."""

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., ge=1)
    uuid: str = Field(..., min_length=1)
    question: str = Field(default="", description="Prompt the essay answers")
    essay_content: str = Field(default="", description="Full essay text")
    essay_type: str = Field(default="task-2")
    created_by: int | None = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow)


class Segment(BaseModel):
    """A titled, typed, ordered sub-unit of an essay."""

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., ge=1)
    essay_id: int = Field(..., ge=1)
    segment_order: int = Field(..., ge=0, description="Unique per-essay ordering key")
    type: str = Field(default="unknown")
    title: str = Field(default="")
    content: str = Field(default="")


class FeedbackRecord(BaseModel):
    """Columns shared by essay-level and segment-level feedback rows."""

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., ge=1)
    feedback_criteria: str = Field(..., min_length=1)
    feedback_language: str = Field(default="en")
    source: Literal["ai", "human"] = Field(default="ai")
    cot_content: str = Field(default="")
    score_content: str = Field(default="")
    feedback_content: str = Field(default="")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def column_value(self, column: str) -> str:
        """Return the content of one of the three content columns."""
        if column not in CONTENT_COLUMNS:
            raise ValueError(f"Unknown content column: {column}")
        return getattr(self, column)


class EssayFeedback(FeedbackRecord):
    """Feedback attached to a whole essay for one criterion."""

    essay_id: int = Field(..., ge=1)


class SegmentFeedback(FeedbackRecord):
    """Feedback attached to one segment for one criterion."""

    segment_id: int = Field(..., ge=1)


class Credential(BaseModel):
    """A provider API key with its usage counter."""

    model_config = ConfigDict(frozen=True)

    provider: str = Field(..., min_length=1)
    api_key: str = Field(..., min_length=1)
    usage_count: int = Field(default=0, ge=0)


# ==============================================================================
# Extraction Models
# ==============================================================================


class ExtractedSegment(BaseModel):
    """A segment recovered from paragraph-level model output."""

    model_config = ConfigDict(frozen=True, strict=True)

    title: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    type: str = Field(default="unknown")
    order: int = Field(..., ge=0)


# ==============================================================================
# Feed Models
# ==============================================================================


class StepConfig(BaseModel):
    """
    Typed configuration for one feed step.

    Built once by the feed parser from the stored section/field layout,
    so dispatch code never reads configuration by string path.
    """

    model_config = ConfigDict(frozen=True, strict=True)

    english_prompt: str = Field(default="", description="general-setting.englishPrompt")
    vietnamese_prompt: str = Field(default="", description="general-setting.vietnamesePrompt")
    api_provider: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    temperature: float = Field(..., ge=0.0, le=2.0)
    max_tokens: int = Field(..., gt=0)
    score_regex: str | None = Field(default=None, description="advanced-setting.scoreRegex")
    guided_choice: tuple[str, ...] | None = Field(default=None)
    guided_regex: str | None = Field(default=None)
    guided_json: dict[str, Any] | None = Field(default=None)
    guided_json_vi: dict[str, Any] | None = Field(default=None)
    extra: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Sections and fields not mapped onto named attributes",
    )

    def prompt_for(self, language: str) -> str:
        """Return the prompt for a language, falling back to English."""
        if language == "vi" and self.vietnamese_prompt.strip():
            return self.vietnamese_prompt
        return self.english_prompt

    def guided_json_for(self, language: str) -> dict[str, Any] | None:
        """Return the guided JSON schema for a language."""
        if language == "vi" and self.guided_json_vi:
            return self.guided_json_vi
        return self.guided_json


class Step(BaseModel):
    """One stage of a feed."""

    model_config = ConfigDict(frozen=True, strict=True)

    step_type: str = Field(..., min_length=1)
    config: StepConfig


class Feed(BaseModel):
    """A configured unit of feedback generation."""

    model_config = ConfigDict(frozen=True, strict=True)

    id: int = Field(..., ge=1)
    title: str = Field(default="Feedback")
    feedback_criteria: str = Field(..., min_length=1)
    apply_to: str = Field(default=APPLY_TO_ESSAY)
    steps: tuple[Step, ...] = Field(default=())

    @computed_field  # type: ignore[prop-decorator]
    @property
    def step_types(self) -> tuple[str, ...]:
        """Return the step types in execution order."""
        return tuple(step.step_type for step in self.steps)


# ==============================================================================
# Run Models
# ==============================================================================


class ExpansionContext(BaseModel):
    """Everything a prompt expansion may read besides the store."""

    model_config = ConfigDict(frozen=True)

    essay_uuid: str = Field(default="")
    segment_order: int | None = Field(default=None)
    feedback_style: str = Field(default="")
    guide_score: str = Field(default="")
    guide_feedback: str = Field(default="")
    target_score: float | None = Field(default=None)


class ProcessOptions(BaseModel):
    """Caller-supplied options for one feed run."""

    model_config = ConfigDict(frozen=True)

    language: Literal["en", "vi"] | None = Field(default=None)
    segment_order: int | None = Field(default=None, ge=0)
    feedback_style: str = Field(default="")
    guide_score: str = Field(default="")
    guide_feedback: str = Field(default="")
    target_score: float | None = Field(default=None)
    refetch: str | None = Field(
        default=None, description="'all' or a step type to regenerate"
    )
    reuse_existing: bool = Field(default=False)

    @field_validator("refetch")
    @classmethod
    def normalise_refetch(cls, v: str | None) -> str | None:
        """Treat blank refetch values as absent."""
        if v is None or not v.strip():
            return None
        return v.strip()

    @property
    def is_guided(self) -> bool:
        """Whether a human supplied a score or feedback to steer the run."""
        return bool(self.guide_score.strip() or self.guide_feedback.strip())


class StepResult(BaseModel):
    """Outcome of one executed step."""

    model_config = ConfigDict(frozen=True)

    step_type: str
    content: str
    mode: Literal["streamed", "pooled", "reused", "guided"]
    variants: int = Field(default=1, ge=0)
    written: bool = Field(default=False)


class FeedResult(BaseModel):
    """Outcome of one feed run."""

    model_config = ConfigDict(frozen=True)

    feed_id: int
    essay_uuid: str
    steps: tuple[StepResult, ...] = Field(default=())

    @computed_field  # type: ignore[prop-decorator]
    @property
    def feedback(self) -> str:
        """The last step's output, reported as the feed's result."""
        return self.steps[-1].content if self.steps else ""
