"""
Feed repository.

Holds parsed feeds keyed by id and loads them from a JSON export of
the feed table.
"""

import json
import logging
from pathlib import Path
from typing import Iterable, Iterator

from essayfeed.feeds.parser import FeedParser
from essayfeed.feeds.validator import FeedValidator
from essayfeed.models import Feed

logger = logging.getLogger(__name__)


class FeedNotFoundError(LookupError):
    """Raised when a feed id is not in the repository."""

    def __init__(self, feed_id: int):
        self.feed_id = feed_id
        super().__init__(f"Feed {feed_id} not found")


class FeedRepository:
    """In-memory feed lookup."""

    def __init__(self, feeds: Iterable[Feed] = ()):
        self._feeds: dict[int, Feed] = {}
        for feed in feeds:
            self.add(feed)

    def add(self, feed: Feed) -> None:
        """Add or replace a feed."""
        if feed.id in self._feeds:
            logger.warning(f"Replacing feed {feed.id}")
        self._feeds[feed.id] = feed

    def get(self, feed_id: int) -> Feed:
        """
        Look up a feed.

        Raises:
            FeedNotFoundError: If no feed has this id.
        """
        try:
            return self._feeds[feed_id]
        except KeyError:
            raise FeedNotFoundError(feed_id) from None

    def all(self) -> list[Feed]:
        """All feeds, ordered by id."""
        return [self._feeds[k] for k in sorted(self._feeds)]

    def __len__(self) -> int:
        return len(self._feeds)

    def __iter__(self) -> Iterator[Feed]:
        return iter(self.all())

    def __contains__(self, feed_id: object) -> bool:
        return feed_id in self._feeds

    @classmethod
    def from_json(
        cls,
        path: Path | str,
        parser: FeedParser | None = None,
        validator: FeedValidator | None = None,
    ) -> "FeedRepository":
        """
        Load feeds from a JSON file.

        The file holds a list of feed records or `{"feeds": [...]}`.
        When a validator is given every feed must pass it.

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If the file is not a list of feed records.
            FeedParseError: If a record is malformed.
            FeedValidationError: If a feed fails validation.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Feeds file not found: {path}")

        data = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(data, dict):
            data = data.get("feeds", [])
        if not isinstance(data, list):
            raise ValueError(f"{path} must contain a list of feeds")

        parser = parser or FeedParser()
        feeds = parser.parse_many(data)
        if validator is not None:
            for feed in feeds:
                validator.validate_or_raise(feed)

        logger.info(f"Loaded {len(feeds)} feeds from {path}")
        return cls(feeds)
