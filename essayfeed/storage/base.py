"""
Base classes for the storage collaborators.

Defines the narrow interfaces the orchestrator consumes: an essay store
that answers equality-filter queries and performs create/update calls,
and a credential vault that hands out provider API keys.
"""

from abc import ABC, abstractmethod
from typing import Any, Mapping

from essayfeed.models import Credential, Essay, EssayFeedback, Segment, SegmentFeedback

Filters = Mapping[str, Any]


class StoreError(Exception):
    """
    Raised when a store operation fails.

    Contains the operation name and the underlying cause, if any.
    """

    def __init__(self, message: str, operation: str, cause: Exception | None = None):
        self.operation = operation
        self.cause = cause
        super().__init__(f"{operation} failed: {message}")


class EssayStore(ABC):
    """
    Abstract data store for essays, segments and feedback rows.

    Query methods take equality filters on record fields and return
    records in the store's natural order. They never raise for a
    missing record; an empty list is the not-found signal.
    """

    @abstractmethod
    def get_essays(self, filters: Filters) -> list[Essay]:
        """Return essays matching every filter."""
        ...

    @abstractmethod
    def get_segments(self, filters: Filters) -> list[Segment]:
        """Return segments matching every filter, ordered by segment_order."""
        ...

    @abstractmethod
    def get_essay_feedbacks(self, filters: Filters) -> list[EssayFeedback]:
        """Return essay feedback rows matching every filter."""
        ...

    @abstractmethod
    def get_segment_feedbacks(self, filters: Filters) -> list[SegmentFeedback]:
        """Return segment feedback rows matching every filter."""
        ...

    @abstractmethod
    def create_segment(
        self, essay_id: int, segment_order: int, segment_type: str, title: str, content: str
    ) -> Segment:
        """
        Create a segment with an explicit order.

        Raises:
            StoreError: If the order is already taken for the essay.
        """
        ...

    @abstractmethod
    def create_essay_feedback(
        self,
        essay_id: int,
        feedback_criteria: str,
        feedback_language: str,
        source: str,
        content: Mapping[str, str],
    ) -> EssayFeedback:
        """Create an essay feedback row with the given content columns."""
        ...

    @abstractmethod
    def update_essay_feedback(self, feedback_id: int, column: str, content: str) -> EssayFeedback:
        """Set one content column of an essay feedback row."""
        ...

    @abstractmethod
    def create_segment_feedback(
        self,
        segment_id: int,
        feedback_criteria: str,
        feedback_language: str,
        source: str,
        content: Mapping[str, str],
    ) -> SegmentFeedback:
        """Create a segment feedback row with the given content columns."""
        ...

    @abstractmethod
    def update_segment_feedback(
        self, feedback_id: int, column: str, content: str
    ) -> SegmentFeedback:
        """Set one content column of a segment feedback row."""
        ...

    def get_essay_by_uuid(self, essay_uuid: str) -> Essay | None:
        """
        Look up a single essay by uuid.

        Args:
            essay_uuid: The essay's public identifier.

        Returns:
            The essay, or None when no essay has that uuid.
        """
        if not essay_uuid:
            return None
        essays = self.get_essays({"uuid": essay_uuid})
        return essays[0] if essays else None


class CredentialVault(ABC):
    """Abstract source of provider API keys."""

    @abstractmethod
    def get_credential(self, provider: str, increment_usage: bool = True) -> Credential | None:
        """
        Return a usable credential for a provider.

        Args:
            provider: Provider name (e.g. 'openai', 'huggingface').
            increment_usage: Whether to bump the key's usage counter.

        Returns:
            A credential, or None when the provider has no key.
        """
        ...
