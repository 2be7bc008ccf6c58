"""
Feed validation module.

Checks parsed feeds before they are run, so a misconfigured step is
reported once at load time rather than midway through a run.
"""

from essayfeed.config import ConfigurationError
from essayfeed.dispatch.providers import known_providers
from essayfeed.feedback.scoring import ScoringError, compile_score_pattern
from essayfeed.models import APPLY_TO_ESSAY, APPLY_TO_PARAGRAPH, SEGMENT_SCOPES, Feed, Step


class FeedValidationError(ConfigurationError):
    """Raised when feed validation fails."""

    def __init__(self, errors: list[str], feed_id: int | None = None):
        self.errors = errors
        self.feed_id = feed_id
        header = f"Feed {feed_id} validation failed" if feed_id else "Feed validation failed"
        super().__init__(header + ":\n" + "\n".join(f"  - {e}" for e in errors))


class FeedValidator:
    """
    Validates feeds for completeness.

    Checks:
    1. The feed targets a supported subject and has at least one step
    2. Every step has an English prompt
    3. Every step names a known provider
    4. Score patterns compile
    """

    SUPPORTED_SUBJECTS = frozenset({APPLY_TO_ESSAY, APPLY_TO_PARAGRAPH}) | SEGMENT_SCOPES

    def validate(self, feed: Feed) -> tuple[bool, list[str]]:
        """
        Validate a feed and return any issues found.

        Args:
            feed: The feed to validate.

        Returns:
            Tuple of (is_valid, list of issues).
        """
        issues: list[str] = []

        if feed.apply_to not in self.SUPPORTED_SUBJECTS:
            issues.append(f"Unsupported apply_to '{feed.apply_to}'")
        if not feed.steps:
            issues.append("Feed has no steps")

        for i, step in enumerate(feed.steps, start=1):
            issues.extend(self._validate_step(step, i))

        return len(issues) == 0, issues

    def validate_or_raise(self, feed: Feed) -> None:
        """
        Validate a feed and raise if invalid.

        Raises:
            FeedValidationError: If validation fails.
        """
        is_valid, issues = self.validate(feed)
        if not is_valid:
            raise FeedValidationError(issues, feed_id=feed.id)

    def _validate_step(self, step: Step, index: int) -> list[str]:
        issues: list[str] = []
        prefix = f"Step {index} ({step.step_type})"
        config = step.config

        if not config.english_prompt.strip():
            issues.append(f"{prefix}: English prompt is empty")

        if config.api_provider not in known_providers():
            issues.append(
                f"{prefix}: Unknown provider '{config.api_provider}' "
                f"(expected one of {', '.join(known_providers())})"
            )

        if config.score_regex:
            try:
                compile_score_pattern(config.score_regex)
            except ScoringError as e:
                issues.append(f"{prefix}: {e}")

        return issues
