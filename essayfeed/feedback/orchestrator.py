"""
Feedback orchestrator - runs a feed against one essay.

Each step's prompt is expanded against live essay data, dispatched as
a single streamed call or a pool of variant calls, post-processed and
written back to the store. Progress, content and errors are relayed
to the message sink passed into every call.
"""

import asyncio
import logging
from typing import TYPE_CHECKING

from essayfeed.config import ConfigurationError, Settings, get_settings
from essayfeed.dispatch.cancellation import CancellationToken
from essayfeed.dispatch.dispatcher import Dispatcher
from essayfeed.dispatch.providers import CompletionRequest, guided_decoding_fields
from essayfeed.feedback.scoring import extract_score
from essayfeed.feedback.writer import FeedbackWriter, SubjectRef
from essayfeed.models import (
    STEP_SCORING,
    ExpansionContext,
    Feed,
    FeedResult,
    ProcessOptions,
    Step,
    StepResult,
)
from essayfeed.sink import MessageSink, step_event_name
from essayfeed.storage.base import CredentialVault, EssayStore
from essayfeed.templating.engine import TemplateEngine
from essayfeed.templating.resolver import ContentResolver

if TYPE_CHECKING:
    from essayfeed.feeds.repository import FeedRepository

logger = logging.getLogger(__name__)

REFETCH_ALL = "all"


class FeedbackOrchestrator:
    """
    Runs feeds step by step.

    Steps execute sequentially; earlier steps' stored output is visible to
    later steps through merge tags. Only configuration errors and
    cancellation abort a run; transport failures degrade the content.
    """

    def __init__(
        self,
        store: EssayStore,
        vault: CredentialVault,
        settings: Settings | None = None,
        *,
        dispatcher: Dispatcher | None = None,
        engine: TemplateEngine | None = None,
        writer: FeedbackWriter | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Essay, segment and feedback store.
            vault: Provider credential vault.
            settings: Configuration settings. Uses global settings if not provided.
            dispatcher: Dispatch layer. Built from the vault if not provided.
            engine: Template engine. Built over the store if not provided.
            writer: Feedback writer. Built over the store if not provided.
        """
        self._settings = settings or get_settings()
        self._dispatcher = dispatcher or Dispatcher(vault, self._settings)
        self._engine = engine or TemplateEngine(ContentResolver(store))
        self._writer = writer or FeedbackWriter(store)

    async def process_feed(
        self,
        feed: Feed,
        essay_uuid: str,
        sink: MessageSink,
        options: ProcessOptions | None = None,
        cancel: CancellationToken | None = None,
    ) -> FeedResult:
        """
        Run every step of a feed against an essay.

        Args:
            feed: The feed to run.
            essay_uuid: UUID of the essay being processed.
            sink: Receiver of progress, content and error events.
            options: Language, guidance and refetch options.
            cancel: Token that aborts the run when triggered.

        Returns:
            The outputs of the executed steps.

        Raises:
            ConfigurationError: If a step is misconfigured or a credential is missing.
            OperationCancelled: If the run is cancelled.
        """
        options = options or ProcessOptions()
        logger.info(f"Processing feed {feed.id} ({feed.feedback_criteria}) for essay {essay_uuid}")
        sink.emit(
            "feed_start",
            {
                "feed_id": feed.id,
                "feed_title": feed.title or "Feedback",
                "feedback_criteria": feed.feedback_criteria,
            },
        )

        try:
            results: list[StepResult] = []
            for step in self._select_steps(feed, options):
                results.append(
                    await self.process_step(feed, step, essay_uuid, sink, options, cancel)
                )
        except Exception as e:
            logger.error(f"Feed {feed.id} failed: {e}")
            sink.emit(
                "feed_error",
                {
                    "feed_id": feed.id,
                    "title": "Error Processing Feedback",
                    "message": str(e),
                    "ctaTitle": "Try Again",
                    "ctaLink": "#",
                },
                is_error=True,
            )
            raise

        result = FeedResult(feed_id=feed.id, essay_uuid=essay_uuid, steps=tuple(results))
        sink.emit(
            "feed_complete",
            {
                "feed_id": feed.id,
                "status": "success",
                "feedback": result.feedback,
                "steps": [{"step_type": r.step_type, "content": r.content} for r in results],
            },
        )
        logger.info(f"Feed {feed.id} finished with {len(results)} steps")
        return result

    async def process_feed_by_id(
        self,
        feed_id: int,
        repository: "FeedRepository",
        essay_uuid: str,
        sink: MessageSink,
        options: ProcessOptions | None = None,
        cancel: CancellationToken | None = None,
    ) -> FeedResult:
        """
        Look a feed up and run it.

        Raises:
            FeedNotFoundError: If the repository has no feed with this id.
        """
        feed = repository.get(feed_id)
        return await self.process_feed(feed, essay_uuid, sink, options, cancel)

    def run(
        self,
        feed: Feed,
        essay_uuid: str,
        sink: MessageSink,
        options: ProcessOptions | None = None,
    ) -> FeedResult:
        """Synchronous wrapper around process_feed for callers without an event loop."""
        return asyncio.run(self.process_feed(feed, essay_uuid, sink, options))

    async def process_step(
        self,
        feed: Feed,
        step: Step,
        essay_uuid: str,
        sink: MessageSink,
        options: ProcessOptions,
        cancel: CancellationToken | None = None,
    ) -> StepResult:
        """
        Run a single step: expand, dispatch, post-process and write.

        Args:
            feed: Feed the step belongs to.
            step: The step to run.
            essay_uuid: UUID of the essay being processed.
            sink: Receiver of events.
            options: Processing options.
            cancel: Cancellation token.

        Returns:
            The step's output and how it was produced.

        Raises:
            ConfigurationError: If the step has no prompt or a credential is missing.
            OperationCancelled: If the run is cancelled.
        """
        language = options.language or self._settings.default_language
        subject = SubjectRef(essay_uuid=essay_uuid, segment_order=options.segment_order)
        source = "human" if options.is_guided else "ai"
        config = step.config

        prompt = config.prompt_for(language)
        if not prompt.strip():
            raise ConfigurationError(
                f"Step '{step.step_type}' of feed {feed.id} has no prompt",
                field="general-setting.englishPrompt",
            )

        if step.step_type == STEP_SCORING and options.guide_score.strip():
            content = options.guide_score.strip()
            logger.info(f"Using guide score for feed {feed.id}")
            sink.emit(
                step_event_name(step.step_type),
                {"content": content, "step_type": step.step_type, "guided": True},
            )
            outcome = self._writer.save_step_output(
                subject, feed, step.step_type, content, language, source="human"
            )
            return StepResult(
                step_type=step.step_type, content=content, mode="guided", written=outcome.written
            )

        if self._should_reuse(step, options):
            existing = self._writer.existing_content(subject, feed, step.step_type)
            if existing:
                logger.info(f"Reusing stored {step.step_type} output for feed {feed.id}")
                sink.emit(
                    step_event_name(step.step_type),
                    {"content": existing, "step_type": step.step_type, "reused": True},
                )
                return StepResult(step_type=step.step_type, content=existing, mode="reused")

        if cancel is not None:
            cancel.raise_if_cancelled()

        ctx = ExpansionContext(
            essay_uuid=essay_uuid,
            segment_order=options.segment_order,
            feedback_style=options.feedback_style,
            guide_score=options.guide_score,
            guide_feedback=options.guide_feedback,
            target_score=options.target_score,
        )
        expanded = self._engine.expand(prompt, ctx)
        extra_body = guided_decoding_fields(config, language)

        def request_for(text: str) -> CompletionRequest:
            return CompletionRequest(
                provider=config.api_provider,
                model=config.model,
                prompt=text,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                extra_body=extra_body,
            )

        if isinstance(expanded, list):
            logger.info(f"Step {step.step_type}: pooling {len(expanded)} prompt variants")
            sink.emit(
                "batch_processing",
                {
                    "total_prompts": len(expanded),
                    "message": f"Processing {len(expanded)} prompts in parallel",
                },
            )
            pooled = await self._dispatcher.pool(
                [request_for(text) for text in expanded], step.step_type, sink, cancel
            )
            content, mode, variants = pooled.content, "pooled", len(expanded)
        else:
            logger.info(f"Step {step.step_type}: streaming single prompt")
            content = await self._dispatcher.stream(
                request_for(expanded), step.step_type, sink, cancel
            )
            mode, variants = "streamed", 1

        if step.step_type == STEP_SCORING and config.score_regex and content:
            content = extract_score(content, config.score_regex)

        if cancel is not None:
            cancel.raise_if_cancelled()

        outcome = self._writer.save_step_output(
            subject, feed, step.step_type, content, language, source
        )
        return StepResult(
            step_type=step.step_type,
            content=content,
            mode=mode,
            variants=variants,
            written=outcome.written,
        )

    @staticmethod
    def _select_steps(feed: Feed, options: ProcessOptions) -> tuple[Step, ...]:
        if options.refetch is None or options.refetch == REFETCH_ALL:
            return feed.steps
        selected = tuple(s for s in feed.steps if s.step_type == options.refetch)
        if not selected:
            raise ConfigurationError(
                f"Feed {feed.id} has no '{options.refetch}' step to refetch", field="refetch"
            )
        return selected

    @staticmethod
    def _should_reuse(step: Step, options: ProcessOptions) -> bool:
        if not options.reuse_existing:
            return False
        return options.refetch not in (REFETCH_ALL, step.step_type)
