"""
Content modifiers for resolved merge tag values.

Modifiers are pure transforms applied left to right from a
`:`-joined chain. List content is transformed element-wise (one level
of nesting is flattened back out) except by `flatten`, which joins the
list into a single string. Unknown modifier names leave content unchanged.
"""

import html
import json
import re
from typing import Any, Callable

from essayfeed.templating.parser import split_modifier_chain

VARIANT_SEPARATOR = "\n\n---\n\n"
NO_CONTENT_PLACEHOLDER = "No content available."

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+(?=[A-Z])")
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n|\n\s+")
_WORD_START = re.compile(r"(^|[ \t\r\n\f\v])([^ \t\r\n\f\v])")
_REMOVE_ITEMS_WHERE = re.compile(r"^remove_items_where_\{(.+?)\}_\{(.+?)\}_\{(.+?)\}$", re.DOTALL)


def as_text(value: Any) -> str:
    """Render a resolved value as prompt text; containers become JSON."""
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    if value is None:
        return ""
    return str(value)


# ==============================================================================
# Splitting
# ==============================================================================


def split_sentences(text: str) -> list[str]:
    """Split text on sentence-final punctuation followed by a capital letter."""
    text = text.strip()
    if not text:
        return []
    return [s.strip() for s in _SENTENCE_BOUNDARY.split(text) if s.strip()]


def split_paragraphs(text: str) -> list[str]:
    """
    Split text on blank-line or indented breaks.

    Falls back to single-newline splitting when no such break exists
    but the text still spans several lines.
    """
    if not text:
        return []
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    parts = _PARAGRAPH_BREAK.split(text)
    if len(parts) <= 1 and "\n" in text:
        parts = text.split("\n")
    return [p.strip() for p in parts if p.strip()]


# ==============================================================================
# JSON helpers
# ==============================================================================


def _find_property(data: Any, name: str) -> Any:
    if isinstance(data, dict):
        if data.get(name) is not None:
            return data[name]
        children = data.values()
    elif isinstance(data, list):
        children = data
    else:
        return None
    for child in children:
        if isinstance(child, (dict, list)):
            found = _find_property(child, name)
            if found is not None:
                return found
    return None


def _find_all_properties(data: Any, name: str) -> list[Any]:
    results: list[Any] = []
    if isinstance(data, dict):
        if data.get(name) is not None:
            results.append(data[name])
        children = list(data.values())
    elif isinstance(data, list):
        children = data
    else:
        return results
    for child in children:
        if isinstance(child, (dict, list)):
            results.extend(_find_all_properties(child, name))
    return results


def _remove_property(data: Any, name: str) -> Any:
    if isinstance(data, dict):
        return {k: _remove_property(v, name) for k, v in data.items() if k != name}
    if isinstance(data, list):
        return [_remove_property(item, name) for item in data]
    return data


def _condition_matches(item_value: Any, operator: str, compare: str) -> bool:
    text = as_text(item_value)
    if operator == "equals":
        return text == compare
    if operator == "not_equals":
        return text != compare
    if operator == "contains":
        return compare in text
    if operator == "not_contains":
        return compare not in text
    return False


def _remove_items_where(data: Any, prop: str, operator: str, value: str) -> Any:
    if isinstance(data, list):
        kept = []
        for item in data:
            if isinstance(item, dict) and prop in item and item[prop] is not None:
                if _condition_matches(item[prop], operator, value):
                    continue
            kept.append(_remove_items_where(item, prop, operator, value))
        return kept
    if isinstance(data, dict):
        return {k: _remove_items_where(v, prop, operator, value) for k, v in data.items()}
    return data


def _pretty_json(data: Any) -> str:
    return json.dumps(data, indent=4, ensure_ascii=False)


def _json_extract(text: str, name: str) -> Any:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return ["Invalid JSON."]
    value = _find_property(data, name)
    if value is None:
        return [f"Schema mismatch: {name} property not found."]
    if isinstance(value, (list, dict)) and not value:
        return [f"No {name} found."]
    return value


def _json_extract_all(text: str, name: str) -> Any:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return ["Invalid JSON."]
    values = _find_all_properties(data, name)
    if not values:
        return [f"No {name} found."]
    flattened: list[Any] = []
    for value in values:
        if isinstance(value, list):
            flattened.extend(value)
        else:
            flattened.append(value)
    return flattened


def _json_rewrite(text: str, transform: Callable[[Any], Any]) -> Any:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return ["Invalid JSON."]
    return _pretty_json(transform(data))


# ==============================================================================
# Modifier registry
# ==============================================================================


def _capitalize(text: str) -> str:
    return _WORD_START.sub(lambda m: m.group(1) + m.group(2).upper(), text)


def _sentence(text: str) -> list[str]:
    return split_sentences(text) or [NO_CONTENT_PLACEHOLDER]


def _paragraph(text: str) -> list[str]:
    return split_paragraphs(text) or [NO_CONTENT_PLACEHOLDER]


_SCALAR_MODIFIERS: dict[str, Callable[[str], Any]] = {
    "uppercase": str.upper,
    "lowercase": str.lower,
    "capitalize": _capitalize,
    "trim": str.strip,
    "html_entity_decode": html.unescape,
    "sentence": _sentence,
    "paragraph": _paragraph,
    "paragraph_count": lambda text: len(split_paragraphs(text)),
}


def _prefixed_handler(modifier: str) -> Callable[[str], Any] | None:
    # json_all_ must be checked before json_
    if modifier.startswith("json_all_"):
        name = modifier[len("json_all_") :]
        return lambda text: _json_extract_all(text, name)
    if modifier.startswith("json_"):
        name = modifier[len("json_") :]
        return lambda text: _json_extract(text, name)
    if modifier.startswith("remove_property_"):
        name = modifier[len("remove_property_") :]
        return lambda text: _json_rewrite(text, lambda data: _remove_property(data, name))
    match = _REMOVE_ITEMS_WHERE.match(modifier)
    if match:
        prop, operator, value = match.groups()
        return lambda text: _json_rewrite(
            text, lambda data: _remove_items_where(data, prop, operator, value)
        )
    return None


def apply_modifier(content: Any, modifier: str) -> Any:
    """
    Apply a single modifier.

    Args:
        content: A scalar or a list of values.
        modifier: Modifier name.

    Returns:
        The transformed content; unknown modifiers return it unchanged.
    """
    if modifier == "flatten":
        if isinstance(content, list):
            return VARIANT_SEPARATOR.join(as_text(item) for item in content)
        return content

    if isinstance(content, list):
        result: list[Any] = []
        for item in content:
            modified = apply_modifier(item, modifier)
            if isinstance(modified, list):
                result.extend(modified)
            else:
                result.append(modified)
        return result

    handler = _SCALAR_MODIFIERS.get(modifier) or _prefixed_handler(modifier)
    if handler is None:
        return content
    return handler(as_text(content))


def apply_modifiers(content: Any, chain: str) -> Any:
    """
    Apply a `:`-joined modifier chain left to right.

    Example:
        >>> apply_modifiers("  Hello World ", "trim:lowercase")
        'hello world'
    """
    for modifier in split_modifier_chain(chain):
        content = apply_modifier(content, modifier)
    return content
