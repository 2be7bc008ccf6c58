"""
Provider adapter.

Builds provider-specific request payloads and headers, and parses
streamed `data:` lines and full JSON bodies back into text. Every
provider speaks the OpenAI chat-completions dialect; they differ in
base URL, authentication and extra payload fields.
"""

import json
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from essayfeed.config import Settings
from essayfeed.models import Credential, StepConfig

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "openai"
STREAM_DONE = "[DONE]"


class StreamDone:
    """Sentinel returned when a stream signals its end."""


STREAM_END = StreamDone()


class ProviderProfile(BaseModel):
    """How to talk to one provider."""

    model_config = ConfigDict(frozen=True)

    name: str
    base_url: str
    requires_api_key: bool = True
    token_provider: str | None = Field(
        default=None,
        description="Vault provider whose key is sent in the payload as api_token",
    )


class CompletionRequest(BaseModel):
    """One chat completion to send."""

    model_config = ConfigDict(frozen=True)

    provider: str
    model: str
    prompt: str
    temperature: float
    max_tokens: int
    extra_body: dict[str, Any] = Field(default_factory=dict)


_PROFILE_TRAITS: dict[str, dict[str, Any]] = {
    "google": {},
    "openai": {},
    "open-key-ai": {},
    "home-server": {"requires_api_key": False, "token_provider": "huggingface"},
}


def known_providers() -> tuple[str, ...]:
    """Names of providers with built-in profiles."""
    return tuple(_PROFILE_TRAITS)


def get_provider_profile(name: str, settings: Settings) -> ProviderProfile:
    """
    Return the profile for a provider, falling back to the default provider.

    Args:
        name: Provider name from the step configuration.
        settings: Settings carrying the base URL table.

    Returns:
        The provider profile.
    """
    if name not in _PROFILE_TRAITS:
        logger.warning(f"Unknown provider '{name}', using '{DEFAULT_PROVIDER}'")
        name = DEFAULT_PROVIDER
    base_url = settings.provider_base_urls.get(name) or settings.provider_base_urls[
        DEFAULT_PROVIDER
    ]
    return ProviderProfile(name=name, base_url=base_url, **_PROFILE_TRAITS[name])


def build_payload(
    request: CompletionRequest, stream: bool, api_token: str | None = None
) -> dict[str, Any]:
    """
    Build the JSON payload for a chat completion.

    Args:
        request: The completion to send.
        stream: Whether to request a streamed response.
        api_token: Token placed in the payload for providers that authenticate that way.

    Returns:
        Payload dictionary.
    """
    payload: dict[str, Any] = {
        "model": request.model,
        "messages": [{"role": "user", "content": request.prompt}],
        "temperature": request.temperature,
        "max_tokens": request.max_tokens,
        "stream": stream,
    }
    if api_token:
        payload["api_token"] = api_token
    payload.update(request.extra_body)
    return payload


def build_headers(
    profile: ProviderProfile, credential: Credential | None, stream: bool
) -> dict[str, str]:
    """Build request headers for a provider."""
    headers = {
        "Content-Type": "application/json",
        "Accept": "text/event-stream" if stream else "application/json",
    }
    if profile.requires_api_key and credential is not None:
        headers["Authorization"] = f"Bearer {credential.api_key}"
    return headers


def extract_stream_delta(line: str) -> str | StreamDone | None:
    """
    Parse one line of a server-sent event stream.

    Returns:
        The delta text, STREAM_END for the terminating sentinel, or None
        for lines that carry no content (keep-alives, malformed JSON).
    """
    line = line.strip()
    if not line.startswith("data:"):
        return None
    data = line[len("data:") :].strip()
    if data == STREAM_DONE:
        return STREAM_END
    try:
        chunk = json.loads(data)
    except json.JSONDecodeError:
        logger.debug(f"Dropping malformed stream chunk: {data[:80]}")
        return None
    try:
        content = chunk["choices"][0]["delta"].get("content")
    except (KeyError, IndexError, TypeError, AttributeError):
        return None
    return content or None


def extract_full_content(body: str) -> str | None:
    """
    Extract the completion text from a non-streamed response body.

    Reads `choices[0].message.content`, falling back to `choices[0].text`.

    Returns:
        The text, an empty string for a well-formed completion with no
        content, or None when the body is not a usable completion.
    """
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        logger.warning(f"Could not parse completion body: {body[:80]}")
        return None
    try:
        choice = data["choices"][0]
    except (KeyError, IndexError, TypeError):
        return None
    if not isinstance(choice, dict):
        return None
    message = choice.get("message")
    candidates = [
        message.get("content") if isinstance(message, dict) else None,
        choice.get("text"),
    ]
    texts = [c for c in candidates if isinstance(c, str)]
    if not texts:
        return None
    return next((text for text in texts if text), "")


def guided_decoding_fields(config: StepConfig, language: str) -> dict[str, Any]:
    """
    Extra payload fields for guided decoding, when the step configures them.

    `guided_json_vi` replaces `guided_json` for Vietnamese runs.
    """
    fields: dict[str, Any] = {}
    if config.guided_choice:
        fields["guided_choice"] = list(config.guided_choice)
    if config.guided_regex:
        fields["guided_regex"] = config.guided_regex
    guided_json = config.guided_json_for(language)
    if guided_json:
        fields["guided_json"] = guided_json
    return fields
