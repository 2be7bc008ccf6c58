"""
Pytest configuration and fixtures.

Provides common test fixtures for all test modules.
"""

import asyncio
import json
import re
import tempfile
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Generator

import pytest

from essayfeed.config import Settings
from essayfeed.dispatch.providers import ProviderProfile
from essayfeed.models import (
    Credential,
    Essay,
    EssayFeedback,
    Feed,
    Segment,
    SegmentFeedback,
    Step,
    StepConfig,
)
from essayfeed.sink import CollectingSink
from essayfeed.storage import InMemoryCredentialVault, InMemoryEssayStore

ESSAY_UUID = "essay-uuid-1"
UNSEGMENTED_ESSAY_UUID = "essay-uuid-2"


# ==============================================================================
# Directory Fixtures
# ==============================================================================


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


# ==============================================================================
# Settings Fixtures
# ==============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings that never wait between retries."""
    return Settings(
        _env_file=None,
        openai_api_key="sk-test-openai",
        google_api_key="test-google-key",
        open_key_ai_api_key=None,
        huggingface_api_key="hf-test-token",
        pool_concurrency=5,
        max_retries=0,
        retry_base_delay=0.0,
        default_provider="openai",
        default_model="test-model",
        default_language="en",
    )


# ==============================================================================
# Store Fixtures
# ==============================================================================


@pytest.fixture
def essay_store() -> InMemoryEssayStore:
    """
    Store with two essays.

    Essay 1 has an introduction and a conclusion segment plus existing
    'Coherence' feedback; essay 2 has no segments yet.
    """
    return InMemoryEssayStore(
        essays=[
            Essay(
                id=1,
                uuid=ESSAY_UUID,
                question="Discuss X",
                essay_content="Some people think X. Others disagree.\n\nI believe X is right.",
            ),
            Essay(
                id=2,
                uuid=UNSEGMENTED_ESSAY_UUID,
                question="Discuss Y",
                essay_content="First paragraph here.\n\nSecond paragraph here.",
            ),
        ],
        segments=[
            Segment(
                id=1,
                essay_id=1,
                segment_order=1,
                type="introduction",
                title="Introduction",
                content="Intro text.",
            ),
            Segment(
                id=2,
                essay_id=1,
                segment_order=2,
                type="conclusion",
                title="Conclusion",
                content="Conclusion text.",
            ),
        ],
        essay_feedbacks=[
            EssayFeedback(
                id=1,
                essay_id=1,
                feedback_criteria="Coherence",
                score_content="6",
                feedback_content="Well organised.",
                source="human",
            ),
        ],
        segment_feedbacks=[
            SegmentFeedback(
                id=1,
                segment_id=1,
                feedback_criteria="Coherence",
                feedback_content="Clear hook.",
            ),
        ],
    )


@pytest.fixture
def vault() -> InMemoryCredentialVault:
    """Vault with one key per provider used in tests."""
    return InMemoryCredentialVault(
        [
            Credential(provider="openai", api_key="sk-test-openai"),
            Credential(provider="google", api_key="test-google-key"),
            Credential(provider="huggingface", api_key="hf-test-token"),
        ]
    )


@pytest.fixture
def sink() -> CollectingSink:
    """Sink that records every emitted event."""
    return CollectingSink()


# ==============================================================================
# Feed Fixtures
# ==============================================================================


@pytest.fixture
def step_factory() -> Callable[..., Step]:
    """Build a step with test defaults; keyword arguments override StepConfig fields."""

    def make_step(step_type: str, prompt: str, provider: str = "openai", **overrides: Any) -> Step:
        config = StepConfig(
            english_prompt=prompt,
            api_provider=provider,
            model="test-model",
            temperature=0.0,
            max_tokens=256,
            **overrides,
        )
        return Step(step_type=step_type, config=config)

    return make_step


@pytest.fixture
def feed_factory() -> Callable[..., Feed]:
    """Build a feed from steps."""

    def make_feed(
        *steps: Step,
        feed_id: int = 1,
        criteria: str = "Task Response",
        apply_to: str = "essay",
        title: str = "Task Response Feedback",
    ) -> Feed:
        return Feed(
            id=feed_id,
            title=title,
            feedback_criteria=criteria,
            apply_to=apply_to,
            steps=tuple(steps),
        )

    return make_feed


@pytest.fixture
def feed_record() -> dict[str, Any]:
    """A feed as stored in the feed table, with meta as a JSON string."""
    meta = {
        "steps": [
            {
                "step": "chain-of-thought",
                "sections": [
                    {
                        "section": "general-setting",
                        "fields": [
                            {"id": "englishPrompt", "value": "Think about {|essay:question||}"},
                            {"id": "vietnamesePrompt", "value": "Suy nghĩ về {|essay:question||}"},
                            {"id": "apiProvider", "value": "openai"},
                            {"id": "model", "value": "gpt-4o-mini"},
                        ],
                    },
                    {
                        "section": "advanced-setting",
                        "fields": [
                            {"id": "temperature", "value": "0.2"},
                            {"id": "maxToken", "value": "512"},
                        ],
                    },
                ],
            },
            {
                "step": "scoring",
                "sections": [
                    {
                        "section": "general-setting",
                        "fields": [
                            {"id": "englishPrompt", "value": "Score the essay."},
                            {"id": "apiProvider", "value": "google"},
                        ],
                    },
                    {
                        "section": "advanced-setting",
                        "fields": [
                            {"id": "scoreRegex", "value": "/\\d+(\\.\\d+)?/"},
                            {"id": "guided_choice", "value": "5\n6\n7\n8"},
                        ],
                    },
                ],
            },
        ]
    }
    return {
        "id": 7,
        "feed_title": "Task Response",
        "feedback_criteria": "Task Response",
        "apply_to": "essay",
        "meta": json.dumps(meta),
    }


# ==============================================================================
# Fake LLM Provider
# ==============================================================================


def completion_body(content: str) -> str:
    """A non-streamed chat completion response body."""
    return json.dumps({"choices": [{"message": {"role": "assistant", "content": content}}]})


def stream_lines(content: str) -> list[str]:
    """Server-sent event lines streaming `content` word by word."""
    lines = [
        "data: " + json.dumps({"choices": [{"delta": {"content": chunk}}]})
        for chunk in re.findall(r"\S+\s*", content)
    ]
    return lines + ["data: [DONE]"]


class ScriptedProvider:
    """
    Stand-in for the provider endpoints.

    Replies are chosen by the first key contained in the prompt; an
    Exception value is raised instead of replying. Every request's
    payload and headers are recorded.
    """

    def __init__(self) -> None:
        self.replies: dict[str, str | Exception] = {}
        self.calls: list[dict[str, Any]] = []
        self.headers: list[dict[str, str]] = []
        self.clients_created = 0
        self.clients_closed = 0
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    def reply_for(self, prompt: str) -> str | Exception:
        for key, reply in self.replies.items():
            if key in prompt:
                return reply
        return f"Reply to: {prompt}"

    def factory(self, profile: ProviderProfile, settings: Settings) -> "FakeLLMClient":
        self.clients_created += 1
        return FakeLLMClient(profile, self)

    @property
    def prompts(self) -> list[str]:
        return [call["messages"][0]["content"] for call in self.calls]


class FakeLLMClient:
    """LLM client double driven by a ScriptedProvider."""

    def __init__(self, profile: ProviderProfile, script: ScriptedProvider):
        self.profile = profile
        self._script = script

    async def complete(
        self, payload: dict[str, Any], headers: dict[str, str], cancel: Any = None
    ) -> str:
        self._record(payload, headers)
        self._script.in_flight += 1
        self._script.max_in_flight = max(self._script.max_in_flight, self._script.in_flight)
        try:
            await asyncio.sleep(self._script.delay)
        finally:
            self._script.in_flight -= 1
        reply = self._script.reply_for(payload["messages"][0]["content"])
        if isinstance(reply, Exception):
            raise reply
        return completion_body(reply)

    async def stream(
        self, payload: dict[str, Any], headers: dict[str, str], cancel: Any = None
    ) -> AsyncIterator[str]:
        self._record(payload, headers)
        reply = self._script.reply_for(payload["messages"][0]["content"])
        if isinstance(reply, Exception):
            raise reply
        for line in stream_lines(reply):
            yield line

    async def aclose(self) -> None:
        self._script.clients_closed += 1

    def _record(self, payload: dict[str, Any], headers: dict[str, str]) -> None:
        self._script.calls.append(payload)
        self._script.headers.append(headers)


@pytest.fixture
def provider() -> ScriptedProvider:
    """Scripted provider whose factory plugs into the Dispatcher."""
    return ScriptedProvider()
