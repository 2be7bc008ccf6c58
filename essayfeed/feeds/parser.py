"""
Feed parser module.

Builds typed Feed models from stored feed records. Step configuration
is stored as sections of `{id, value}` fields; the parser maps the
known fields onto StepConfig attributes once, at load time.
"""

import json
from typing import Any, Mapping, Sequence

from pydantic import ValidationError

from essayfeed.config import Settings, get_settings
from essayfeed.models import Feed, Step, StepConfig

GENERAL_SECTION = "general-setting"
ADVANCED_SECTION = "advanced-setting"

# (section, field id) -> StepConfig attribute
_GENERAL_FIELDS = {
    "englishPrompt": "english_prompt",
    "vietnamesePrompt": "vietnamese_prompt",
    "apiProvider": "api_provider",
    "model": "model",
}
_ADVANCED_FIELDS = {
    "temperature": "temperature",
    "maxToken": "max_tokens",
    "scoreRegex": "score_regex",
    "guided_choice": "guided_choice",
    "guided_regex": "guided_regex",
    "guided_json": "guided_json",
    "guided_json_vi": "guided_json_vi",
}

Sections = dict[str, dict[str, Any]]


class FeedParseError(Exception):
    """Raised when a feed record cannot be turned into a Feed."""

    def __init__(self, message: str, feed_id: Any = None, step_index: int | None = None):
        self.feed_id = feed_id
        self.step_index = step_index
        if step_index is not None:
            message = f"Step {step_index}: {message}"
        if feed_id is not None:
            message = f"Feed {feed_id}: {message}"
        super().__init__(message)


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _json_value(value: Any, field: str) -> Any:
    if not isinstance(value, str):
        return value
    if not value.strip():
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        raise ValueError(f"{field} is not valid JSON: {e}") from e


def _choices(value: Any) -> tuple[str, ...] | None:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.startswith("["):
            value = _json_value(stripped, "guided_choice")
        else:
            value = [line for line in stripped.splitlines() if line.strip()]
    if not isinstance(value, Sequence) or isinstance(value, str):
        raise ValueError("guided_choice must be a list of strings")
    choices = tuple(_text(v).strip() for v in value if _text(v).strip())
    return choices or None


def flatten_sections(raw: Any) -> Sections:
    """
    Normalise stored step sections into `{section: {field: value}}`.

    Accepts the stored list form
    `[{"section": ..., "fields": [{"id": ..., "value": ...}]}]`
    and the compact mapping form `{"general-setting": {"englishPrompt": ...}}`.
    """
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return {str(name): dict(fields or {}) for name, fields in raw.items()}
    if not isinstance(raw, Sequence) or isinstance(raw, str):
        raise ValueError("step sections must be a list or a mapping")

    sections: Sections = {}
    for section in raw:
        if not isinstance(section, Mapping) or "section" not in section:
            raise ValueError("every section needs a 'section' name")
        fields = sections.setdefault(str(section["section"]), {})
        for field in section.get("fields") or []:
            if isinstance(field, Mapping) and "id" in field:
                fields[str(field["id"])] = field.get("value")
    return sections


def build_step_config(sections: Sections, settings: Settings) -> StepConfig:
    """
    Build a typed StepConfig from flattened sections.

    Provider, model, temperature and max tokens fall back to the
    settings defaults. Fields without a named attribute are kept in
    `extra`.

    Raises:
        ValueError: If a field holds a value of the wrong shape.
    """
    general = dict(sections.get(GENERAL_SECTION, {}))
    advanced = dict(sections.get(ADVANCED_SECTION, {}))

    values: dict[str, Any] = {}
    for field, attribute in _GENERAL_FIELDS.items():
        if field in general:
            values[attribute] = _text(general.pop(field))
    for field, attribute in _ADVANCED_FIELDS.items():
        if field in advanced:
            values[attribute] = advanced.pop(field)

    temperature = values.get("temperature")
    max_tokens = values.get("max_tokens")
    try:
        temperature = (
            settings.default_temperature if temperature in (None, "") else float(temperature)
        )
        max_tokens = (
            settings.default_max_tokens if max_tokens in (None, "") else int(float(max_tokens))
        )
    except (TypeError, ValueError) as e:
        raise ValueError(f"temperature/maxToken must be numeric: {e}") from e

    extra = {
        name: fields
        for name, fields in sections.items()
        if name not in (GENERAL_SECTION, ADVANCED_SECTION)
    }
    if general:
        extra[GENERAL_SECTION] = general
    if advanced:
        extra[ADVANCED_SECTION] = advanced

    return StepConfig(
        english_prompt=values.get("english_prompt", ""),
        vietnamese_prompt=values.get("vietnamese_prompt", ""),
        api_provider=_text(values.get("api_provider")).strip() or settings.default_provider,
        model=_text(values.get("model")).strip() or settings.default_model,
        temperature=temperature,
        max_tokens=max_tokens,
        score_regex=_text(values.get("score_regex")).strip() or None,
        guided_choice=_choices(values.get("guided_choice")),
        guided_regex=_text(values.get("guided_regex")).strip() or None,
        guided_json=_json_value(values.get("guided_json"), "guided_json") or None,
        guided_json_vi=_json_value(values.get("guided_json_vi"), "guided_json_vi") or None,
        extra=extra,
    )


class FeedParser:
    """
    Parses stored feed records into Feed models.

    Record shape:
        {"id": 7, "feed_title": "...", "feedback_criteria": "...",
         "apply_to": "essay", "meta": {"steps": [...]}}

    `meta` may also be a JSON string. Each step is
    `{"step": <type>, "sections": [...]}` or `{"step": <type>, "config": {...}}`.
    """

    def __init__(self, settings: Settings | None = None):
        """
        Initialize the parser.

        Args:
            settings: Settings supplying step defaults. Uses global settings if not provided.
        """
        self._settings = settings or get_settings()

    def parse(self, record: Mapping[str, Any]) -> Feed:
        """
        Parse a feed record.

        Args:
            record: Stored feed record.

        Returns:
            The typed Feed.

        Raises:
            FeedParseError: If the record is malformed.
        """
        feed_id = record.get("id")
        try:
            feed_id = int(feed_id)  # type: ignore[arg-type]
        except (TypeError, ValueError) as e:
            raise FeedParseError(f"invalid feed id {feed_id!r}") from e

        criteria = _text(record.get("feedback_criteria")).strip()
        if not criteria:
            raise FeedParseError("feedback_criteria is required", feed_id=feed_id)

        steps = tuple(
            self._parse_step(raw_step, feed_id, index)
            for index, raw_step in enumerate(self._raw_steps(record, feed_id), start=1)
        )

        try:
            return Feed(
                id=feed_id,
                title=_text(record.get("feed_title") or record.get("title")).strip()
                or "Feedback",
                feedback_criteria=criteria,
                apply_to=_text(record.get("apply_to")).strip() or "essay",
                steps=steps,
            )
        except ValidationError as e:
            raise FeedParseError(str(e), feed_id=feed_id) from e

    def parse_many(self, records: Sequence[Mapping[str, Any]]) -> list[Feed]:
        """Parse several feed records, in order."""
        return [self.parse(record) for record in records]

    @staticmethod
    def _raw_steps(record: Mapping[str, Any], feed_id: int) -> list[Any]:
        meta = record.get("meta")
        if meta is None:
            meta = {"steps": record.get("steps", [])}
        if isinstance(meta, str):
            try:
                meta = json.loads(meta) if meta.strip() else {}
            except json.JSONDecodeError as e:
                raise FeedParseError(f"meta is not valid JSON: {e}", feed_id=feed_id) from e
        if not isinstance(meta, Mapping):
            raise FeedParseError("meta must be an object", feed_id=feed_id)
        steps = meta.get("steps") or []
        if not isinstance(steps, list):
            raise FeedParseError("meta.steps must be a list", feed_id=feed_id)
        return steps

    def _parse_step(self, raw_step: Any, feed_id: int, index: int) -> Step:
        if not isinstance(raw_step, Mapping):
            raise FeedParseError("step must be an object", feed_id=feed_id, step_index=index)

        step_type = _text(raw_step.get("step") or raw_step.get("step_type")).strip()
        if not step_type:
            raise FeedParseError("step type is missing", feed_id=feed_id, step_index=index)

        raw_sections = raw_step.get("sections", raw_step.get("config"))
        try:
            config = build_step_config(flatten_sections(raw_sections), self._settings)
            return Step(step_type=step_type, config=config)
        except (ValueError, ValidationError) as e:
            raise FeedParseError(str(e), feed_id=feed_id, step_index=index) from e
