"""
In-memory implementations of the storage collaborators.

Used by the CLI (backed by a JSON file) and by the test suite.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Iterable, Mapping, TypeVar

from pydantic import BaseModel

from essayfeed.config import Settings
from essayfeed.models import (
    CONTENT_COLUMNS,
    Credential,
    Essay,
    EssayFeedback,
    Segment,
    SegmentFeedback,
    utcnow,
)
from essayfeed.storage.base import CredentialVault, EssayStore, Filters, StoreError

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)

_CREDENTIAL_PROVIDERS = ("openai", "google", "open-key-ai", "huggingface")


def _matches(record: BaseModel, filters: Filters) -> bool:
    for field, expected in filters.items():
        if not hasattr(record, field):
            return False
        actual = getattr(record, field)
        if actual != expected and str(actual) != str(expected):
            return False
    return True


def _select(records: Iterable[RecordT], filters: Filters) -> list[RecordT]:
    return [record for record in records if _matches(record, filters)]


class InMemoryEssayStore(EssayStore):
    """
    Dictionary-backed essay store.

    Records are kept in insertion (id) order. A lock guards id allocation
    and updates so pooled callbacks may write concurrently.
    """

    def __init__(
        self,
        essays: Iterable[Essay] = (),
        segments: Iterable[Segment] = (),
        essay_feedbacks: Iterable[EssayFeedback] = (),
        segment_feedbacks: Iterable[SegmentFeedback] = (),
    ):
        self._lock = threading.Lock()
        self._essays: dict[int, Essay] = {e.id: e for e in essays}
        self._segments: dict[int, Segment] = {s.id: s for s in segments}
        self._essay_feedbacks: dict[int, EssayFeedback] = {f.id: f for f in essay_feedbacks}
        self._segment_feedbacks: dict[int, SegmentFeedback] = {
            f.id: f for f in segment_feedbacks
        }

    # ==========================================================================
    # Queries
    # ==========================================================================

    def get_essays(self, filters: Filters) -> list[Essay]:
        return _select(self._essays.values(), filters)

    def get_segments(self, filters: Filters) -> list[Segment]:
        segments = _select(self._segments.values(), filters)
        return sorted(segments, key=lambda s: (s.essay_id, s.segment_order))

    def get_essay_feedbacks(self, filters: Filters) -> list[EssayFeedback]:
        return _select(self._essay_feedbacks.values(), filters)

    def get_segment_feedbacks(self, filters: Filters) -> list[SegmentFeedback]:
        return _select(self._segment_feedbacks.values(), filters)

    # ==========================================================================
    # Writes
    # ==========================================================================

    def create_segment(
        self, essay_id: int, segment_order: int, segment_type: str, title: str, content: str
    ) -> Segment:
        with self._lock:
            if essay_id not in self._essays:
                raise StoreError(f"essay {essay_id} does not exist", "create_segment")
            taken = any(
                s.essay_id == essay_id and s.segment_order == segment_order
                for s in self._segments.values()
            )
            if taken:
                raise StoreError(
                    f"segment order {segment_order} already exists for essay {essay_id}",
                    "create_segment",
                )
            segment = Segment(
                id=self._next_id(self._segments),
                essay_id=essay_id,
                segment_order=segment_order,
                type=segment_type,
                title=title,
                content=content,
            )
            self._segments[segment.id] = segment
            return segment

    def create_essay_feedback(
        self,
        essay_id: int,
        feedback_criteria: str,
        feedback_language: str,
        source: str,
        content: Mapping[str, str],
    ) -> EssayFeedback:
        with self._lock:
            if essay_id not in self._essays:
                raise StoreError(f"essay {essay_id} does not exist", "create_essay_feedback")
            record = EssayFeedback(
                id=self._next_id(self._essay_feedbacks),
                essay_id=essay_id,
                feedback_criteria=feedback_criteria,
                feedback_language=feedback_language,
                source=source,
                **self._content_columns(content),
            )
            self._essay_feedbacks[record.id] = record
            return record

    def update_essay_feedback(self, feedback_id: int, column: str, content: str) -> EssayFeedback:
        with self._lock:
            return self._update(self._essay_feedbacks, feedback_id, column, content)

    def create_segment_feedback(
        self,
        segment_id: int,
        feedback_criteria: str,
        feedback_language: str,
        source: str,
        content: Mapping[str, str],
    ) -> SegmentFeedback:
        with self._lock:
            if segment_id not in self._segments:
                raise StoreError(
                    f"segment {segment_id} does not exist", "create_segment_feedback"
                )
            record = SegmentFeedback(
                id=self._next_id(self._segment_feedbacks),
                segment_id=segment_id,
                feedback_criteria=feedback_criteria,
                feedback_language=feedback_language,
                source=source,
                **self._content_columns(content),
            )
            self._segment_feedbacks[record.id] = record
            return record

    def update_segment_feedback(
        self, feedback_id: int, column: str, content: str
    ) -> SegmentFeedback:
        with self._lock:
            return self._update(self._segment_feedbacks, feedback_id, column, content)

    # ==========================================================================
    # Persistence
    # ==========================================================================

    @classmethod
    def from_json(cls, path: Path | str) -> "InMemoryEssayStore":
        """
        Load a store from a JSON file.

        The file holds an object with optional `essays`, `segments`,
        `essay_feedbacks` and `segment_feedbacks` arrays.

        Raises:
            StoreError: If the file cannot be read or parsed.
        """
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(str(e), "load", cause=e) from e

        return cls(
            essays=[Essay.model_validate(item) for item in data.get("essays", [])],
            segments=[Segment.model_validate(item) for item in data.get("segments", [])],
            essay_feedbacks=[
                EssayFeedback.model_validate(item) for item in data.get("essay_feedbacks", [])
            ],
            segment_feedbacks=[
                SegmentFeedback.model_validate(item) for item in data.get("segment_feedbacks", [])
            ],
        )

    def dump_json(self, path: Path | str) -> Path:
        """Write the store's contents to a JSON file and return its path."""
        output = Path(path)
        data: dict[str, list[dict[str, Any]]] = {
            "essays": [e.model_dump(mode="json") for e in self._essays.values()],
            "segments": [s.model_dump(mode="json") for s in self._segments.values()],
            "essay_feedbacks": [
                f.model_dump(mode="json") for f in self._essay_feedbacks.values()
            ],
            "segment_feedbacks": [
                f.model_dump(mode="json") for f in self._segment_feedbacks.values()
            ],
        }
        output.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        return output

    # ==========================================================================
    # Helpers
    # ==========================================================================

    @staticmethod
    def _next_id(table: Mapping[int, Any]) -> int:
        return max(table, default=0) + 1

    @staticmethod
    def _content_columns(content: Mapping[str, str]) -> dict[str, str]:
        unknown = set(content) - set(CONTENT_COLUMNS)
        if unknown:
            raise StoreError(f"unknown content columns {sorted(unknown)}", "create_feedback")
        return dict(content)

    @staticmethod
    def _update(table: dict[int, RecordT], record_id: int, column: str, content: str) -> RecordT:
        if column not in CONTENT_COLUMNS:
            raise StoreError(f"unknown content column {column}", "update_feedback")
        if record_id not in table:
            raise StoreError(f"feedback {record_id} does not exist", "update_feedback")
        updated = table[record_id].model_copy(update={column: content, "updated_at": utcnow()})
        table[record_id] = updated
        return updated


class InMemoryCredentialVault(CredentialVault):
    """
    Credential vault that hands out the least-used key per provider.

    The usage counter is best-effort: concurrent fetches may observe
    the same count before either increment lands.
    """

    def __init__(self, credentials: Iterable[Credential] = ()):
        self._credentials: list[Credential] = list(credentials)

    def get_credential(self, provider: str, increment_usage: bool = True) -> Credential | None:
        candidates = [c for c in self._credentials if c.provider == provider]
        if not candidates:
            logger.warning(f"No credential configured for provider '{provider}'")
            return None

        credential = min(candidates, key=lambda c: c.usage_count)
        if increment_usage:
            index = self._credentials.index(credential)
            self._credentials[index] = credential.model_copy(
                update={"usage_count": credential.usage_count + 1}
            )
        return credential

    def usage_for(self, provider: str) -> int:
        """Total recorded usage across a provider's keys."""
        return sum(c.usage_count for c in self._credentials if c.provider == provider)

    @classmethod
    def from_settings(cls, settings: Settings) -> "InMemoryCredentialVault":
        """Seed a vault from the API keys present in settings."""
        credentials = []
        for provider in _CREDENTIAL_PROVIDERS:
            key = settings.api_key_for(provider)
            if key:
                credentials.append(Credential(provider=provider, api_key=key))
        return cls(credentials)
