"""
Dispatch layer.

Runs a single expanded prompt as one streamed request, or a list of
prompt variants as a bounded-concurrency pool of non-streamed
requests, relaying chunks, progress and errors to a message sink.
"""

import asyncio
import logging
import re
from contextlib import aclosing
from typing import Callable, NamedTuple

from essayfeed.config import ConfigurationError, Settings, get_settings
from essayfeed.dispatch.cancellation import CancellationToken
from essayfeed.dispatch.llm_client import DispatchError, LLMClient
from essayfeed.dispatch.providers import (
    STREAM_END,
    CompletionRequest,
    ProviderProfile,
    build_headers,
    build_payload,
    extract_full_content,
    extract_stream_delta,
    get_provider_profile,
)
from essayfeed.models import Credential
from essayfeed.sink import MessageSink, step_event_name
from essayfeed.storage.base import CredentialVault
from essayfeed.templating.modifiers import VARIANT_SEPARATOR

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ProviderProfile, Settings], LLMClient]

ERROR_BLOCK = re.compile(r"^Error processing prompt #\d+:")


class PooledResult(NamedTuple):
    """Reassembled outcome of a pooled dispatch."""

    content: str
    results: dict[int, str]
    errors: dict[int, str]

    @property
    def successful(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return len(self.errors)


def reassemble(total: int, results: dict[int, str], errors: dict[int, str]) -> str:
    """
    Join pooled results in variant order.

    Failed indices become inline `Error processing prompt #i: <message>`
    blocks in their own position.
    """
    blocks: list[str] = []
    for index in range(total):
        if index in results:
            blocks.append(results[index])
        elif index in errors:
            blocks.append(f"Error processing prompt #{index}: {errors[index]}")
    return VARIANT_SEPARATOR.join(blocks)


class Dispatcher:
    """
    Executes completion requests for one step.

    Credentials are looked up before any request is sent, so a missing
    key aborts the step without network traffic.
    """

    def __init__(
        self,
        vault: CredentialVault,
        settings: Settings | None = None,
        client_factory: ClientFactory | None = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            vault: Source of provider credentials.
            settings: Configuration settings. Uses global settings if not provided.
            client_factory: Builds an LLM client for a provider profile.
        """
        self._vault = vault
        self._settings = settings or get_settings()
        self._client_factory: ClientFactory = client_factory or LLMClient

    async def stream(
        self,
        request: CompletionRequest,
        step_type: str,
        sink: MessageSink,
        cancel: CancellationToken | None = None,
    ) -> str:
        """
        Run one streamed completion, forwarding every delta to the sink.

        Args:
            request: The completion to send.
            step_type: Step type used to name content events.
            sink: Receiver of content and error events.
            cancel: Token checked on every streamed line.

        Returns:
            The accumulated text; partial if the stream broke, empty if it never opened.

        Raises:
            ConfigurationError: If the provider's credential is missing.
            OperationCancelled: If the token is cancelled.
        """
        profile = get_provider_profile(request.provider, self._settings)
        credential, api_token = self._resolve_auth(profile)
        payload = build_payload(request, stream=True, api_token=api_token)
        headers = build_headers(profile, credential, stream=True)

        event_name = step_event_name(step_type)
        accumulated: list[str] = []
        client = self._client_factory(profile, self._settings)
        try:
            async with aclosing(client.stream(payload, headers, cancel)) as lines:
                async for line in lines:
                    if cancel is not None:
                        cancel.raise_if_cancelled()
                    delta = extract_stream_delta(line)
                    if delta is STREAM_END:
                        break
                    if delta:
                        accumulated.append(delta)
                        sink.emit(event_name, {"content": delta, "step_type": step_type})
        except DispatchError as e:
            partial = bool(accumulated)
            if partial:
                logger.warning(f"Stream for {step_type} ended early: {e}")
            else:
                logger.error(f"Stream for {step_type} failed: {e}")
            sink.emit(
                f"{event_name}_ERROR",
                {
                    "title": "API Request Failed",
                    "message": str(e),
                    "step_type": step_type,
                    "partial": partial,
                },
                is_error=True,
            )
        finally:
            await client.aclose()

        return "".join(accumulated)

    async def pool(
        self,
        requests: list[CompletionRequest],
        step_type: str,
        sink: MessageSink,
        cancel: CancellationToken | None = None,
    ) -> PooledResult:
        """
        Run several completions with bounded concurrency.

        Args:
            requests: One request per prompt variant, in variant order.
            step_type: Step type used to name content events.
            sink: Receiver of progress, content and error events.
            cancel: Token checked before every request attempt.

        Returns:
            Results and errors keyed by variant index, plus the reassembled text.

        Raises:
            ConfigurationError: If a credential is missing (before any request is sent).
            OperationCancelled: If the token is cancelled.
        """
        total = len(requests)
        if total == 0:
            return PooledResult(content="", results={}, errors={})

        profiles = [get_provider_profile(r.provider, self._settings) for r in requests]
        auths = [self._resolve_auth(profile) for profile in profiles]

        event_name = step_event_name(step_type)
        semaphore = asyncio.Semaphore(self._settings.pool_concurrency)
        results: dict[int, str] = {}
        errors: dict[int, str] = {}
        processed = 0
        clients: dict[str, LLMClient] = {}
        for profile in profiles:
            if profile.name not in clients:
                clients[profile.name] = self._client_factory(profile, self._settings)

        async def run_one(index: int) -> None:
            nonlocal processed
            profile = profiles[index]
            credential, api_token = auths[index]
            async with semaphore:
                if cancel is not None:
                    cancel.raise_if_cancelled()
                payload = build_payload(requests[index], stream=False, api_token=api_token)
                headers = build_headers(profile, credential, stream=False)
                try:
                    body = await clients[profile.name].complete(payload, headers, cancel)
                except DispatchError as e:
                    errors[index] = str(e)
                else:
                    content = extract_full_content(body)
                    if content is None:
                        errors[index] = "Could not parse completion response"
                    elif not content:
                        errors[index] = "Completion response was empty"
                    else:
                        results[index] = content

                processed += 1
                progress = {
                    "index": index,
                    "total": total,
                    "processed": processed,
                    "progress": round(processed / total * 100),
                }
                if index in results:
                    sink.emit("parallel_progress", progress)
                    sink.emit(
                        event_name,
                        {"index": index, "content": results[index], "step_type": step_type},
                    )
                else:
                    logger.warning(f"Prompt #{index} of {step_type} failed: {errors[index]}")
                    sink.emit(
                        "parallel_error",
                        {**progress, "title": "API Request Failed", "message": errors[index]},
                        is_error=True,
                    )

        try:
            outcomes = await asyncio.gather(
                *(run_one(i) for i in range(total)), return_exceptions=True
            )
        finally:
            for client in clients.values():
                await client.aclose()

        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome

        sink.emit(
            "parallel_complete",
            {"total_prompts": total, "successful": len(results), "failed": len(errors)},
        )
        return PooledResult(
            content=reassemble(total, results, errors), results=results, errors=errors
        )

    def _resolve_auth(self, profile: ProviderProfile) -> tuple[Credential | None, str | None]:
        credential: Credential | None = None
        api_token: str | None = None

        if profile.requires_api_key:
            credential = self._vault.get_credential(profile.name, increment_usage=True)
            if credential is None:
                raise ConfigurationError(
                    f"No API key configured for provider '{profile.name}'",
                    field="apiProvider",
                )

        if profile.token_provider:
            token = self._vault.get_credential(profile.token_provider, increment_usage=False)
            if token is None:
                raise ConfigurationError(
                    f"No '{profile.token_provider}' token configured for provider "
                    f"'{profile.name}'",
                    field="apiProvider",
                )
            api_token = token.api_key

        return credential, api_token
