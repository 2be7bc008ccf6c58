"""
Unit tests for prompt templating.

Tests the merge tag parser, modifier library, content resolver and
template engine against an in-memory essay store.
"""

import json
from unittest.mock import patch

import pytest

from essayfeed.models import ExpansionContext
from essayfeed.storage import InMemoryEssayStore
from essayfeed.templating import (
    NO_CONTENT_PLACEHOLDER,
    VARIANT_SEPARATOR,
    ContentResolver,
    MergeTagParser,
    TagSpec,
    TemplateEngine,
    apply_modifier,
    apply_modifiers,
)
from essayfeed.templating.engine import evaluate_score_condition
from essayfeed.templating.parser import split_modifier_chain


@pytest.fixture
def ctx() -> ExpansionContext:
    """Expansion context for the segmented sample essay."""
    return ExpansionContext(essay_uuid="essay-uuid-1")


@pytest.fixture
def resolver(essay_store: InMemoryEssayStore) -> ContentResolver:
    """Resolver over the sample store."""
    return ContentResolver(essay_store)


@pytest.fixture
def engine(resolver: ContentResolver) -> TemplateEngine:
    """Template engine over the sample store."""
    return TemplateEngine(resolver)


class TestMergeTagParser:
    """Tests for MergeTagParser."""

    def test_parse_tag_with_empty_prefix_and_suffix(self) -> None:
        """Test the `{|params||}` form used by most prompts."""
        tags = MergeTagParser().parse("Rate: {|essay:question||}")

        assert len(tags) == 1
        assert tags[0].prefix == ""
        assert tags[0].params == "essay:question"
        assert tags[0].suffix == ""
        assert tags[0].raw == "{|essay:question||}"

    def test_parse_prefix_and_suffix(self) -> None:
        """Test prefix and suffix text are captured."""
        tags = MergeTagParser().parse("{Question: |essay:question|\n}")

        assert tags[0].prefix == "Question: "
        assert tags[0].suffix == "\n"

    def test_json_object_is_not_a_tag(self) -> None:
        """Test literal JSON braces are left alone."""
        assert MergeTagParser().parse('Return {"score": 5, "notes": "x|y"}') == []

    def test_params_may_contain_brace_groups(self) -> None:
        """Test nested groups inside params do not end the tag."""
        text = "{|essay_feedback:feedback_content:remove_items_where_{url}_{contains}_{http:}||}"
        tags = MergeTagParser().parse(text)

        assert len(tags) == 1
        assert tags[0].params.endswith("remove_items_where_{url}_{contains}_{http:}")

    def test_repeated_tags_are_all_found(self) -> None:
        """Test each occurrence is reported with its own offsets."""
        text = "{|essay:question||} and again {|essay:question||}"
        tags = MergeTagParser().parse(text)

        assert len(tags) == 2
        assert tags[0].raw == tags[1].raw
        assert tags[1].start > tags[0].end

    def test_parse_spec_full(self) -> None:
        """Test table, field, filter and modifiers are split out."""
        spec = MergeTagParser.parse_spec("segment:content[type:introduction]:trim:lowercase")

        assert spec == TagSpec(
            table="segment",
            field="content",
            filter_field="type",
            filter_value="introduction",
            modifiers="trim:lowercase",
        )

    def test_parse_spec_without_table(self) -> None:
        """Test params without a table part are not specs."""
        assert MergeTagParser.parse_spec("feedback_style") is None

    def test_split_modifier_chain_respects_groups(self) -> None:
        """Test colons inside braces stay inside their modifier."""
        chain = "json_all_items:remove_items_where_{url}_{contains}_{http:}:flatten"

        assert split_modifier_chain(chain) == [
            "json_all_items",
            "remove_items_where_{url}_{contains}_{http:}",
            "flatten",
        ]


class TestModifiers:
    """Tests for the modifier library."""

    def test_flatten_joins_list(self) -> None:
        """Test flatten uses the variant separator."""
        assert apply_modifier(["a", "b"], "flatten") == f"a{VARIANT_SEPARATOR}b"

    def test_flatten_scalar_is_noop(self) -> None:
        """Test flatten leaves scalars unchanged."""
        assert apply_modifier("a", "flatten") == "a"

    def test_sentence_split(self) -> None:
        """Test sentence splitting on terminal punctuation."""
        assert apply_modifier("A. B!", "sentence") == ["A.", "B!"]

    def test_sentence_without_boundary(self) -> None:
        """Test text without a boundary becomes a one-element list."""
        assert apply_modifier("  No punctuation here ", "sentence") == ["No punctuation here"]

    def test_sentence_of_empty_text(self) -> None:
        """Test empty input yields the placeholder."""
        assert apply_modifier("", "sentence") == [NO_CONTENT_PLACEHOLDER]

    def test_paragraph_split_on_blank_lines(self) -> None:
        """Test paragraph splitting on blank lines."""
        assert apply_modifier("P1.\n\nP2.", "paragraph") == ["P1.", "P2."]

    def test_paragraph_falls_back_to_single_newlines(self) -> None:
        """Test single-newline splitting when there are no blank lines."""
        assert apply_modifier("Line one\nLine two", "paragraph") == ["Line one", "Line two"]

    def test_list_modifier_is_applied_elementwise_and_flattened(self) -> None:
        """Test list results of element-wise application are flattened one level."""
        assert apply_modifier(["A. B.", "C."], "sentence") == ["A.", "B.", "C."]

    def test_unknown_modifier_is_noop(self) -> None:
        """Test unknown modifiers return their input."""
        assert apply_modifier("Text", "sparkle") == "Text"
        assert apply_modifier(["a", "b"], "sparkle") == ["a", "b"]

    def test_chain_applies_left_to_right(self) -> None:
        """Test a modifier chain."""
        assert apply_modifiers("  Hello World ", "trim:lowercase") == "hello world"

    def test_scalar_transforms(self) -> None:
        """Test the simple scalar transforms."""
        assert apply_modifier("hello big world", "capitalize") == "Hello Big World"
        assert apply_modifier("Tom &amp; Jerry", "html_entity_decode") == "Tom & Jerry"
        assert apply_modifier("abc", "uppercase") == "ABC"
        assert apply_modifier("a\n\nb\n\nc", "paragraph_count") == 3

    def test_json_property(self) -> None:
        """Test json_ finds the first occurrence at any depth."""
        assert apply_modifier('{"data": {"score": 7}}', "json_score") == 7

    def test_json_property_errors(self) -> None:
        """Test json_ error placeholders."""
        assert apply_modifier("not json", "json_score") == ["Invalid JSON."]
        assert apply_modifier('{"a": 1}', "json_score") == [
            "Schema mismatch: score property not found."
        ]
        assert apply_modifier('{"items": []}', "json_items") == ["No items found."]

    def test_json_all_property(self) -> None:
        """Test json_all_ collects every occurrence, flattened one level."""
        text = '{"a": {"tips": ["x", "y"]}, "b": {"tips": ["z"]}}'

        assert apply_modifier(text, "json_all_tips") == ["x", "y", "z"]

    def test_remove_property(self) -> None:
        """Test remove_property_ drops the property at every depth."""
        result = apply_modifier('{"a": 1, "b": {"a": 2, "c": 3}}', "remove_property_a")

        assert json.loads(result) == {"b": {"c": 3}}

    def test_remove_items_where(self) -> None:
        """Test remove_items_where_ filters list items."""
        text = '[{"url": "http://x", "t": 1}, {"url": "local", "t": 2}]'
        result = apply_modifiers(text, "remove_items_where_{url}_{contains}_{http:}")

        assert json.loads(result) == [{"url": "local", "t": 2}]


class TestContentResolver:
    """Tests for ContentResolver."""

    def test_essay_field(self, resolver: ContentResolver, ctx: ExpansionContext) -> None:
        """Test a single essay resolves to a scalar."""
        assert resolver.resolve(TagSpec("essay", "question"), ctx) == "Discuss X"

    def test_unsupported_table(self, resolver: ContentResolver, ctx: ExpansionContext) -> None:
        """Test tables outside the allow-list resolve to None."""
        assert resolver.resolve(TagSpec("users", "email"), ctx) is None

    def test_segments_resolve_to_list(
        self, resolver: ContentResolver, ctx: ExpansionContext
    ) -> None:
        """Test segment fields resolve to one value per segment."""
        assert resolver.resolve(TagSpec("segment", "content"), ctx) == [
            "Intro text.",
            "Conclusion text.",
        ]

    def test_segment_filter(self, resolver: ContentResolver, ctx: ExpansionContext) -> None:
        """Test a filter that matches one segment yields a scalar."""
        spec = TagSpec("segment", "content", "type", "introduction")

        assert resolver.resolve(spec, ctx) == "Intro text."

    def test_pinned_segment_resolves_to_scalar(self, resolver: ContentResolver) -> None:
        """Test a pinned segment order yields that segment's value."""
        ctx = ExpansionContext(essay_uuid="essay-uuid-1", segment_order=2)

        assert resolver.resolve(TagSpec("segment", "content"), ctx) == "Conclusion text."

    def test_uuid_filter_value(self, resolver: ContentResolver, ctx: ExpansionContext) -> None:
        """Test the 'uuid' filter value means the current essay."""
        spec = TagSpec("essay", "question", "uuid", "uuid")

        assert resolver.resolve(spec, ctx) == "Discuss X"

    def test_unknown_essay(self, resolver: ContentResolver) -> None:
        """Test lookups for an unknown essay short-circuit to None."""
        ctx = ExpansionContext(essay_uuid="missing")

        assert resolver.resolve(TagSpec("segment", "content"), ctx) is None

    def test_modifiers_applied(self, resolver: ContentResolver, ctx: ExpansionContext) -> None:
        """Test the modifier chain runs on resolved content."""
        spec = TagSpec("essay", "question", modifiers="uppercase")

        assert resolver.resolve(spec, ctx) == "DISCUSS X"

    def test_whole_record_field(self, resolver: ContentResolver, ctx: ExpansionContext) -> None:
        """Test `*` returns the record as an object."""
        record = resolver.resolve(TagSpec("essay", "*"), ctx)

        assert record["uuid"] == "essay-uuid-1"
        assert record["question"] == "Discuss X"

    def test_essay_feedback(self, resolver: ContentResolver, ctx: ExpansionContext) -> None:
        """Test essay feedback filtered by criteria."""
        spec = TagSpec("essay_feedback", "score_content", "feedback_criteria", "Coherence")

        assert resolver.resolve(spec, ctx) == "6"

    def test_segment_feedback(self, resolver: ContentResolver, ctx: ExpansionContext) -> None:
        """Test segment feedback yields one value per segment that has feedback."""
        spec = TagSpec("segment_feedback", "feedback_content")

        assert resolver.resolve(spec, ctx) == "Clear hook."
        assert resolver.resolve(TagSpec("segment_feedback", "cot_content"), ctx) is None


class TestTemplateEngine:
    """Tests for TemplateEngine."""

    def test_prompt_without_tags_is_unchanged(
        self, engine: TemplateEngine, ctx: ExpansionContext
    ) -> None:
        """Test a prompt with no merge tags passes through."""
        prompt = 'Return JSON like {"score": 1}.'

        assert engine.expand(prompt, ctx) == prompt

    def test_scalar_tag(self, engine: TemplateEngine, ctx: ExpansionContext) -> None:
        """Test scalar-only prompts expand to one string."""
        assert engine.expand("Rate: {|essay:question||}", ctx) == "Rate: Discuss X"

    def test_single_record_is_scalar(self, engine: TemplateEngine, ctx: ExpansionContext) -> None:
        """Test a filter matching one segment expands to one string."""
        result = engine.expand("{|segment:content[type:introduction]||}", ctx)

        assert result == "Intro text."

    def test_variant_per_list_position(
        self, engine: TemplateEngine, ctx: ExpansionContext
    ) -> None:
        """Test variant i carries element i and scalars are reused."""
        result = engine.expand("Q: {|essay:question||} S: {|segment:content||}", ctx)

        assert result == [
            "Q: Discuss X S: Intro text.",
            "Q: Discuss X S: Conclusion text.",
        ]

    def test_shortest_list_wins(self, engine: TemplateEngine, ctx: ExpansionContext) -> None:
        """Test the variant count is the minimum list length."""
        prompt = "{|segment:title||}: {|essay:essay_content:sentence||}"

        assert engine.expand(prompt, ctx) == [
            "Introduction: Some people think X.",
            "Conclusion: Others disagree.",
        ]

    def test_each_distinct_tag_resolved_once(
        self, essay_store: InMemoryEssayStore, engine: TemplateEngine, ctx: ExpansionContext
    ) -> None:
        """Test repeated tags are not re-fetched."""
        with patch.object(essay_store, "get_essays", wraps=essay_store.get_essays) as spy:
            engine.expand("{|essay:question||} / {|essay:question||}", ctx)

        assert spy.call_count == 1

    def test_unresolvable_tag_is_empty(
        self, engine: TemplateEngine, ctx: ExpansionContext
    ) -> None:
        """Test missing data substitutes to the empty string."""
        assert engine.expand("Hi {Note: |essay:missing_field|.}!", ctx) == "Hi !"

    def test_guidance_params(self, engine: TemplateEngine) -> None:
        """Test caller-supplied guidance values and their wrappers."""
        prompt = "{Style: |feedback_style|\n}Go"

        plain = ExpansionContext(essay_uuid="essay-uuid-1")
        styled = ExpansionContext(essay_uuid="essay-uuid-1", feedback_style="formal")

        assert engine.expand(prompt, plain) == "Go"
        assert engine.expand(prompt, styled) == "Style: formal\nGo"

    def test_target_score(self, engine: TemplateEngine) -> None:
        """Test the target score and its conditional form."""
        high = ExpansionContext(essay_uuid="essay-uuid-1", target_score=7.0)
        low = ExpansionContext(essay_uuid="essay-uuid-1", target_score=6.0)
        conditional = "{|target_score:if[>=7]then[Aim high]|}"

        assert engine.expand("Target {|target_score||}", high) == "Target 7"
        assert engine.expand(conditional, high) == "Aim high"
        assert engine.expand(conditional, low) == ""

    def test_object_values_are_scalars(
        self, engine: TemplateEngine, ctx: ExpansionContext
    ) -> None:
        """Test a whole record is inserted as JSON, not fanned out."""
        result = engine.expand("{|essay:*||}", ctx)

        assert isinstance(result, str)
        assert json.loads(result)["uuid"] == "essay-uuid-1"

    def test_expand_structured_reports_resolution(
        self, engine: TemplateEngine, ctx: ExpansionContext
    ) -> None:
        """Test the structured result exposes per-tag values."""
        result = engine.expand_structured("{|segment:content||}", ctx)

        assert result.is_parallel is True
        assert result.resolved["{|segment:content||}"] == ["Intro text.", "Conclusion text."]

    @pytest.mark.parametrize(
        "condition,expected",
        [(">=7", True), ("<7", False), ("7", True), ("!=7", False), ("bogus", False)],
    )
    def test_score_conditions(self, condition: str, expected: bool) -> None:
        """Test score condition operators against a score of 7."""
        assert evaluate_score_condition(7.0, condition) is expected
