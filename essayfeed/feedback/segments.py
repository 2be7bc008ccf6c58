"""
Segment extraction from paragraph-level feedback.

Pooled paragraph feedback arrives as one block per paragraph, joined
by the variant separator. Each block is expected to start with a
`Paragraph - <title>` header followed by labelled sub-segments
(Introduction, Topic Sentence, Main Point N, Conclusion, Body Paragraph N).
Blocks without that structure fall back to a first-line title.
Inline error blocks left by failed pooled requests are skipped.
"""

import logging
import re

from essayfeed.dispatch.dispatcher import ERROR_BLOCK
from essayfeed.models import ExtractedSegment
from essayfeed.templating.modifiers import VARIANT_SEPARATOR

logger = logging.getLogger(__name__)

PARAGRAPH_HEADER = re.compile(
    r"#*\s*Paragraph\s*-\s*(?P<title>.+)\s*(?P<body>[\s\S]+)", re.MULTILINE
)

SEGMENT_LABEL = re.compile(
    r"^[ \t#*\-]*"
    r"(?P<title>Introduction|Topic Sentence|Main Point \d+|Conclusion|Body Paragraph \d+)\b"
    r"[ \t*:\-]*",
    re.IGNORECASE | re.MULTILINE,
)

_LIST_MARKERS = re.compile(r"^[\s*\-]+", re.MULTILINE)
_HEADING_MARKERS = re.compile(r"#{1,6}\s+")

MAX_TITLE_LENGTH = 100
FALLBACK_TITLE = "Paragraph"

# Checked in order; first substring hit wins.
_TYPE_KEYWORDS = (
    ("introduction", "introduction"),
    ("conclusion", "conclusion"),
    ("topic sentence", "topic-sentence"),
    ("main point", "main-point"),
)


def determine_segment_type(title: str) -> str:
    """Infer a segment type from its title."""
    lowered = title.lower()
    for keyword, segment_type in _TYPE_KEYWORDS:
        if keyword in lowered:
            return segment_type
    return "unknown"


def clean_segment_content(content: str) -> str:
    """Strip leading list markers and heading markers."""
    content = _LIST_MARKERS.sub("", content)
    content = _HEADING_MARKERS.sub("", content)
    return content.strip()


class SegmentExtractor:
    """
    Splits flattened paragraph feedback into ordered segments.

    Orders are assigned by a single counter across all blocks,
    starting at 1, in scan order.
    """

    def extract_segments(self, flattened_text: str) -> list[ExtractedSegment]:
        """
        Extract segments from pooled paragraph feedback.

        Args:
            flattened_text: Variant outputs joined by the variant separator.

        Returns:
            Segments with titles, cleaned content, types and orders.
        """
        segments: list[ExtractedSegment] = []
        order = 0

        for block in flattened_text.split(VARIANT_SEPARATOR):
            block = block.strip()
            if not block:
                continue
            if ERROR_BLOCK.match(block):
                logger.debug(f"Skipping failed variant block: {block[:80]}")
                continue

            for title, content in self.split_block(block):
                if not title or not content:
                    continue
                order += 1
                segments.append(
                    ExtractedSegment(
                        title=title,
                        content=content,
                        type=determine_segment_type(title),
                        order=order,
                    )
                )

        logger.debug(f"Extracted {len(segments)} segments")
        return segments

    def split_block(self, block: str) -> list[tuple[str, str]]:
        """
        Split one paragraph block into (title, content) pairs.

        Args:
            block: Output for a single paragraph.

        Returns:
            Labelled sub-segments, or a single fallback pair.
        """
        header = PARAGRAPH_HEADER.search(block)
        if header is None:
            return [self._fallback_segment(block)]
        body = header.group("body").strip()
        return self._labelled_segments(body) or [self._fallback_segment(body)]

    @staticmethod
    def _labelled_segments(body: str) -> list[tuple[str, str]]:
        labels = list(SEGMENT_LABEL.finditer(body))
        pairs: list[tuple[str, str]] = []
        for i, label in enumerate(labels):
            end = labels[i + 1].start() if i + 1 < len(labels) else len(body)
            title = label.group("title").strip()
            content = clean_segment_content(body[label.end() : end])
            pairs.append((title, content))
        return pairs

    @staticmethod
    def _fallback_segment(block: str) -> tuple[str, str]:
        first_line = block.split("\n", 1)[0].strip()
        if len(first_line) < MAX_TITLE_LENGTH and not first_line.endswith("."):
            rest = block.strip()[len(first_line) :]
            return first_line, clean_segment_content(rest)
        return FALLBACK_TITLE, clean_segment_content(block)
