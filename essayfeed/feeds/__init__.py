"""Feed loading and validation."""

from essayfeed.feeds.parser import FeedParseError, FeedParser, build_step_config, flatten_sections
from essayfeed.feeds.repository import FeedNotFoundError, FeedRepository
from essayfeed.feeds.validator import FeedValidationError, FeedValidator

__all__ = [
    "FeedParseError",
    "FeedParser",
    "build_step_config",
    "flatten_sections",
    "FeedNotFoundError",
    "FeedRepository",
    "FeedValidationError",
    "FeedValidator",
]
