"""
Merge tag parser.

Parses `{prefix|params|suffix}` merge tags out of prompt text and
`table:field[filter_field:filter_value]:modifier_chain` specs out of
tag params. Both grammars are bracket-sensitive (params may carry
nested `{...}` and `[...]` groups), so they are read with a small
recursive-descent cursor instead of regular expressions.
"""

from typing import NamedTuple


class MergeTag(NamedTuple):
    """A merge tag found in a prompt, with its position."""

    raw: str
    prefix: str
    params: str
    suffix: str
    start: int
    end: int


class TagSpec(NamedTuple):
    """A parsed `table:field[filter]:modifiers` spec."""

    table: str
    field: str
    filter_field: str | None = None
    filter_value: str | None = None
    modifiers: str = ""


class _NoMatch(Exception):
    """Internal signal that the text at the cursor is not a tag."""


_CLOSERS = {"{": "}", "[": "]"}


class _Cursor:
    """Position-tracking reader over a string."""

    def __init__(self, text: str, pos: int = 0):
        self.text = text
        self.pos = pos

    def at_end(self) -> bool:
        return self.pos >= len(self.text)

    def peek(self) -> str:
        return self.text[self.pos]

    def expect(self, char: str) -> None:
        if self.at_end() or self.peek() != char:
            raise _NoMatch()
        self.pos += 1

    def read_group(self) -> str:
        """Read a balanced `{...}` or `[...]` group, nested groups included."""
        opener = self.peek()
        closer = _CLOSERS[opener]
        start = self.pos
        self.pos += 1
        while not self.at_end():
            char = self.peek()
            if char == closer:
                self.pos += 1
                return self.text[start : self.pos]
            if char in _CLOSERS:
                self.read_group()
                continue
            if char in "}]":
                raise _NoMatch()
            self.pos += 1
        raise _NoMatch()

    def read_until(self, stops: str, forbidden: str = "", groups: bool = True) -> str:
        """
        Read up to (not including) the first top-level stop character.

        Raises _NoMatch on end of text or on a forbidden character.
        """
        start = self.pos
        while not self.at_end():
            char = self.peek()
            if char in stops:
                return self.text[start : self.pos]
            if char in forbidden:
                raise _NoMatch()
            if groups and char in _CLOSERS:
                self.read_group()
                continue
            self.pos += 1
        raise _NoMatch()


class MergeTagParser:
    """
    Finds merge tags in prompt text.

    Grammar:
        tag    := '{' prefix '|' params '|' suffix '}'
        prefix := any text without '{', '}' or '|'
        params := text and balanced groups up to the next top-level '|'
        suffix := text and balanced groups up to the closing '}'

    A trailing '|' directly before the closing brace is a terminator,
    so `{|essay:question||}` and `{|essay:question|}` are the same tag.
    Text that does not complete the grammar (JSON objects, stray
    braces) is left as literal text.
    """

    def parse(self, text: str) -> list[MergeTag]:
        """
        Return every merge tag in `text`, in order of appearance.

        Args:
            text: Prompt text to scan.

        Returns:
            Tags with their start/end offsets; repeated tags appear once per occurrence.
        """
        tags: list[MergeTag] = []
        pos = text.find("{")
        while pos != -1:
            tag = self._parse_tag(text, pos)
            if tag is None:
                pos = text.find("{", pos + 1)
            else:
                tags.append(tag)
                pos = text.find("{", tag.end)
        return tags

    def _parse_tag(self, text: str, start: int) -> MergeTag | None:
        cursor = _Cursor(text, start)
        try:
            cursor.expect("{")
            prefix = cursor.read_until("|", forbidden="{}", groups=False)
            cursor.expect("|")
            params = cursor.read_until("|", forbidden="}")
            cursor.expect("|")
            suffix = cursor.read_until("}")
            cursor.expect("}")
        except _NoMatch:
            return None

        if suffix.endswith("|"):
            suffix = suffix[:-1]
        return MergeTag(
            raw=text[start : cursor.pos],
            prefix=prefix,
            params=params,
            suffix=suffix,
            start=start,
            end=cursor.pos,
        )

    @staticmethod
    def parse_spec(params: str) -> TagSpec | None:
        """
        Parse tag params of the form `table:field[filter_field:filter_value]:modifiers`.

        Args:
            params: The middle section of a merge tag.

        Returns:
            The parsed spec, or None when params have no `table:field` shape.
        """
        cursor = _Cursor(params.strip())
        try:
            table = cursor.read_until(":", forbidden="[]{}", groups=False)
            cursor.expect(":")
        except _NoMatch:
            return None

        field_start = cursor.pos
        while not cursor.at_end() and cursor.peek() not in "[:":
            cursor.pos += 1
        field = cursor.text[field_start : cursor.pos].strip()
        if not table.strip() or not field:
            return None

        filter_field: str | None = None
        filter_value: str | None = None
        if not cursor.at_end() and cursor.peek() == "[":
            try:
                group = cursor.read_group()
            except _NoMatch:
                return None
            inner = group[1:-1]
            if ":" in inner:
                name, _, value = inner.partition(":")
                filter_field, filter_value = name.strip() or None, value.strip()

        modifiers = ""
        if not cursor.at_end() and cursor.peek() == ":":
            modifiers = cursor.text[cursor.pos + 1 :].strip()

        return TagSpec(
            table=table.strip(),
            field=field,
            filter_field=filter_field,
            filter_value=filter_value,
            modifiers=modifiers,
        )


def split_modifier_chain(chain: str) -> list[str]:
    """
    Split a modifier chain on top-level ':' characters.

    Colons inside `{...}` or `[...]` groups belong to the modifier,
    e.g. `remove_items_where_{url}_{contains}_{http:}`.
    """
    modifiers: list[str] = []
    depth = 0
    current: list[str] = []
    for char in chain:
        if char in "{[":
            depth += 1
        elif char in "}]" and depth > 0:
            depth -= 1
        if char == ":" and depth == 0:
            modifiers.append("".join(current))
            current = []
            continue
        current.append(char)
    modifiers.append("".join(current))
    return [m.strip() for m in modifiers if m.strip()]
