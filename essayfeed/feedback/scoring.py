"""
Score extraction for scoring steps.

Scoring steps may carry a regular expression (written with or without
PHP-style delimiters, e.g. `/\\d+(\\.\\d+)?/i`) that pulls the score out of
the model's free text.
"""

import logging
import re

logger = logging.getLogger(__name__)

DEFAULT_SCORE_PATTERN = r"\d+"

_DELIMITED = re.compile(r"^([^\w\s\\])(?P<body>.*)\1(?P<flags>[imsxu]*)$", re.DOTALL)

_FLAG_MAP = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "x": re.VERBOSE,
}


class ScoringError(Exception):
    """Raised when a score pattern is invalid."""

    def __init__(self, message: str, pattern: str | None = None):
        self.pattern = pattern
        super().__init__(message)


def compile_score_pattern(expression: str) -> re.Pattern[str]:
    """
    Compile a score pattern, honouring `/.../flags` delimiters.

    Raises:
        ScoringError: If the expression is not a valid regular expression.
    """
    body, flags = expression, 0
    match = _DELIMITED.match(expression.strip())
    if match:
        body = match.group("body")
        for flag in match.group("flags"):
            flags |= _FLAG_MAP.get(flag, 0)
    try:
        return re.compile(body, flags)
    except re.error as e:
        raise ScoringError(f"Invalid score pattern '{expression}': {e}", pattern=expression) from e


def extract_score(text: str, expression: str | None) -> str:
    """
    Extract a score from model output.

    Args:
        text: Full text returned by the scoring step.
        expression: Score pattern; the default pattern is used when empty.

    Returns:
        The first match, or the full text when nothing matches.
    """
    try:
        pattern = compile_score_pattern(expression or DEFAULT_SCORE_PATTERN)
    except ScoringError as e:
        logger.warning(str(e))
        return text
    match = pattern.search(text)
    return match.group(0) if match else text
