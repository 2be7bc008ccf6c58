"""
Unit tests for feed loading.

Tests the feed parser, the feed validator and the feed repository.
"""

import json
from pathlib import Path
from typing import Any, Callable

import pytest

from essayfeed.config import ConfigurationError, Settings
from essayfeed.feeds import (
    FeedNotFoundError,
    FeedParseError,
    FeedParser,
    FeedRepository,
    FeedValidationError,
    FeedValidator,
    build_step_config,
    flatten_sections,
)
from essayfeed.models import Feed, Step


@pytest.fixture
def parser(test_settings: Settings) -> FeedParser:
    """Parser using test defaults."""
    return FeedParser(test_settings)


class TestFlattenSections:
    """Tests for flatten_sections."""

    def test_list_form(self) -> None:
        """Test the stored section/field list form."""
        sections = flatten_sections(
            [
                {"section": "general-setting", "fields": [{"id": "model", "value": "m"}]},
                {"section": "advanced-setting", "fields": []},
            ]
        )

        assert sections == {"general-setting": {"model": "m"}, "advanced-setting": {}}

    def test_mapping_form(self) -> None:
        """Test the compact mapping form."""
        sections = flatten_sections({"general-setting": {"englishPrompt": "Hi"}})

        assert sections == {"general-setting": {"englishPrompt": "Hi"}}

    def test_invalid_shape(self) -> None:
        """Test sections without names are rejected."""
        with pytest.raises(ValueError):
            flatten_sections([{"fields": []}])

        with pytest.raises(ValueError):
            flatten_sections("general-setting")


class TestBuildStepConfig:
    """Tests for build_step_config."""

    def test_defaults_from_settings(self, test_settings: Settings) -> None:
        """Test missing provider, model and sampling fields use settings."""
        config = build_step_config(
            {"general-setting": {"englishPrompt": "Hello"}}, test_settings
        )

        assert config.english_prompt == "Hello"
        assert config.api_provider == "openai"
        assert config.model == "test-model"
        assert config.temperature == test_settings.default_temperature
        assert config.max_tokens == test_settings.default_max_tokens
        assert config.guided_choice is None

    def test_unmapped_fields_kept(self, test_settings: Settings) -> None:
        """Test unknown fields and sections land in extra."""
        config = build_step_config(
            {
                "general-setting": {"englishPrompt": "Hello", "colour": "blue"},
                "ui-setting": {"collapsed": True},
            },
            test_settings,
        )

        assert config.extra == {
            "general-setting": {"colour": "blue"},
            "ui-setting": {"collapsed": True},
        }

    def test_guided_fields(self, test_settings: Settings) -> None:
        """Test guided choice and JSON values given as strings."""
        config = build_step_config(
            {
                "advanced-setting": {
                    "guided_choice": '["Yes", "No"]',
                    "guided_json": '{"type": "object"}',
                    "guided_regex": "  ",
                }
            },
            test_settings,
        )

        assert config.guided_choice == ("Yes", "No")
        assert config.guided_json == {"type": "object"}
        assert config.guided_regex is None

    def test_non_numeric_temperature(self, test_settings: Settings) -> None:
        """Test a non-numeric temperature is rejected."""
        with pytest.raises(ValueError, match="numeric"):
            build_step_config({"advanced-setting": {"temperature": "warm"}}, test_settings)


class TestFeedParser:
    """Tests for FeedParser."""

    def test_parse_record(self, parser: FeedParser, feed_record: dict[str, Any]) -> None:
        """Test a stored record with JSON meta."""
        feed = parser.parse(feed_record)

        assert feed.id == 7
        assert feed.title == "Task Response"
        assert feed.step_types == ("chain-of-thought", "scoring")

        cot = feed.steps[0].config
        assert cot.api_provider == "openai"
        assert cot.model == "gpt-4o-mini"
        assert cot.temperature == 0.2
        assert cot.max_tokens == 512
        assert cot.prompt_for("vi").startswith("Suy nghĩ")

        scoring = feed.steps[1].config
        assert scoring.api_provider == "google"
        assert scoring.model == "test-model"
        assert scoring.score_regex == "/\\d+(\\.\\d+)?/"
        assert scoring.guided_choice == ("5", "6", "7", "8")

    def test_compact_step_config(self, parser: FeedParser) -> None:
        """Test steps given as `step_type` with a `config` mapping."""
        feed = parser.parse(
            {
                "id": "3",
                "feedback_criteria": "Lexical Resource",
                "steps": [
                    {
                        "step_type": "feedback",
                        "config": {"general-setting": {"englishPrompt": "Check words."}},
                    }
                ],
            }
        )

        assert feed.id == 3
        assert feed.title == "Feedback"
        assert feed.apply_to == "essay"
        assert feed.steps[0].config.english_prompt == "Check words."

    def test_missing_criteria(self, parser: FeedParser) -> None:
        """Test a record without criteria is rejected."""
        with pytest.raises(FeedParseError, match="feedback_criteria"):
            parser.parse({"id": 1, "meta": {"steps": []}})

    def test_invalid_id(self, parser: FeedParser) -> None:
        """Test a non-integer id is rejected."""
        with pytest.raises(FeedParseError, match="invalid feed id"):
            parser.parse({"id": "abc", "feedback_criteria": "x"})

    def test_invalid_meta(self, parser: FeedParser) -> None:
        """Test malformed meta JSON is rejected."""
        with pytest.raises(FeedParseError, match="meta is not valid JSON"):
            parser.parse({"id": 1, "feedback_criteria": "x", "meta": "{oops"})

    def test_step_error_names_step(self, parser: FeedParser) -> None:
        """Test step errors carry the feed id and step index."""
        record = {
            "id": 4,
            "feedback_criteria": "x",
            "meta": {
                "steps": [
                    {"step": "feedback", "sections": {}},
                    {"step": "scoring", "sections": {"advanced-setting": {"maxToken": "lots"}}},
                ]
            },
        }

        with pytest.raises(FeedParseError) as exc_info:
            parser.parse(record)

        assert exc_info.value.feed_id == 4
        assert exc_info.value.step_index == 2
        assert str(exc_info.value).startswith("Feed 4: Step 2: ")

    def test_missing_step_type(self, parser: FeedParser) -> None:
        """Test a step without a type is rejected."""
        with pytest.raises(FeedParseError, match="step type is missing"):
            parser.parse({"id": 1, "feedback_criteria": "x", "steps": [{"sections": {}}]})


class TestFeedValidator:
    """Tests for FeedValidator."""

    def test_valid_feed(
        self, feed_factory: Callable[..., Feed], step_factory: Callable[..., Step]
    ) -> None:
        """Test a complete feed passes."""
        feed = feed_factory(step_factory("scoring", "Score it.", score_regex="/\\d+/"))

        is_valid, issues = FeedValidator().validate(feed)

        assert is_valid is True
        assert issues == []

    def test_collects_all_issues(
        self, feed_factory: Callable[..., Feed], step_factory: Callable[..., Step]
    ) -> None:
        """Test every problem is reported."""
        feed = feed_factory(
            step_factory("feedback", "  "),
            step_factory("scoring", "Score.", provider="acme", score_regex="(bad"),
            apply_to="sentence",
        )

        is_valid, issues = FeedValidator().validate(feed)

        assert is_valid is False
        assert len(issues) == 4
        assert "Unsupported apply_to 'sentence'" in issues[0]
        assert any("English prompt is empty" in issue for issue in issues)
        assert any("Unknown provider 'acme'" in issue for issue in issues)
        assert any("Invalid score pattern" in issue for issue in issues)

    def test_no_steps(self, feed_factory: Callable[..., Feed]) -> None:
        """Test a feed without steps is invalid."""
        is_valid, issues = FeedValidator().validate(feed_factory())

        assert is_valid is False
        assert issues == ["Feed has no steps"]

    def test_validate_or_raise(self, feed_factory: Callable[..., Feed]) -> None:
        """Test the raised error is a configuration error with the issues."""
        with pytest.raises(FeedValidationError) as exc_info:
            FeedValidator().validate_or_raise(feed_factory(feed_id=9))

        assert isinstance(exc_info.value, ConfigurationError)
        assert exc_info.value.feed_id == 9
        assert exc_info.value.errors == ["Feed has no steps"]


class TestFeedRepository:
    """Tests for FeedRepository."""

    def test_from_json_list(
        self, temp_dir: Path, test_settings: Settings, feed_record: dict[str, Any]
    ) -> None:
        """Test loading a list of records."""
        path = temp_dir / "feeds.json"
        path.write_text(json.dumps([feed_record]), encoding="utf-8")

        repository = FeedRepository.from_json(
            path, FeedParser(test_settings), FeedValidator()
        )

        assert len(repository) == 1
        assert 7 in repository
        assert repository.get(7).feedback_criteria == "Task Response"

    def test_from_json_wrapped(
        self, temp_dir: Path, test_settings: Settings, feed_record: dict[str, Any]
    ) -> None:
        """Test loading `{"feeds": [...]}`."""
        second = dict(feed_record, id=2)
        path = temp_dir / "feeds.json"
        path.write_text(json.dumps({"feeds": [feed_record, second]}), encoding="utf-8")

        repository = FeedRepository.from_json(path, FeedParser(test_settings))

        assert [feed.id for feed in repository] == [2, 7]

    def test_from_json_validates(
        self, temp_dir: Path, test_settings: Settings
    ) -> None:
        """Test invalid feeds stop the load when a validator is given."""
        path = temp_dir / "feeds.json"
        path.write_text(json.dumps([{"id": 1, "feedback_criteria": "x"}]), encoding="utf-8")

        with pytest.raises(FeedValidationError):
            FeedRepository.from_json(path, FeedParser(test_settings), FeedValidator())

    def test_from_json_errors(self, temp_dir: Path) -> None:
        """Test missing files and non-list content."""
        with pytest.raises(FileNotFoundError):
            FeedRepository.from_json(temp_dir / "missing.json")

        path = temp_dir / "feeds.json"
        path.write_text('"not feeds"', encoding="utf-8")
        with pytest.raises(ValueError):
            FeedRepository.from_json(path)

    def test_get_missing(self) -> None:
        """Test unknown ids raise FeedNotFoundError."""
        with pytest.raises(FeedNotFoundError, match="Feed 5 not found"):
            FeedRepository().get(5)
