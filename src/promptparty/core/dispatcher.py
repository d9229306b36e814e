"""Generation dispatcher: turn a round's prompts into image rows.

Prompts are processed in batches of the provider's concurrency limit.
Batches run one after another with a pause between them, and the items in a
batch run concurrently. Every prompt ends with exactly one image row,
holding either a URL or an error; one prompt failing never touches its
siblings.

If the primary provider is down for everyone (preflight fails, or the whole
first batch reports ``ProviderUnavailableError``) the full prompt set is
handed once to the fallback provider.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Sequence

from promptparty.ai.providers import (
    GenerationError,
    ImageProvider,
    ProviderUnavailableError,
    sanitize_prompt,
    select_providers,
)
from promptparty.core.context import GameContext
from promptparty.db.engine import get_session
from promptparty.db.repository import Repository
from promptparty.models.round import ImageArtifact, PromptItem

logger = logging.getLogger(__name__)

Outcome = ImageArtifact | BaseException


@dataclasses.dataclass
class GenerationReport:
    """Summary of one dispatch, returned to the caller and logged."""

    round_id: str
    provider: str
    succeeded: int = 0
    failed: int = 0
    fallback_used: bool = False
    error: str | None = None


def _describe(exc: BaseException) -> str:
    if isinstance(exc, TimeoutError):
        return "Generation timed out"
    return str(exc) or type(exc).__name__


async def _generate_one(
    provider: ImageProvider,
    text: str,
    question_text: str,
    timeout: float,
) -> ImageArtifact:
    if not text:
        msg = "Prompt is empty after sanitization"
        raise GenerationError(msg)
    return await asyncio.wait_for(provider.generate(text, question_text), timeout=timeout)


async def _persist(
    ctx: GameContext,
    provider: ImageProvider,
    items: Sequence[PromptItem],
    outcomes: Sequence[Outcome],
    report: GenerationReport,
) -> None:
    """Write one row per prompt, each in its own transaction."""
    for item, outcome in zip(items, outcomes, strict=True):
        async with get_session(ctx.engine) as session:
            repo = Repository(session)
            if isinstance(outcome, BaseException):
                written = await repo.insert_generated_image(
                    item.id,
                    error=_describe(outcome),
                    metadata={"provider": provider.name, "model": provider.model},
                )
                report.failed += int(written)
                logger.warning(
                    "image_generation_failed prompt=%s provider=%s error=%s",
                    item.id,
                    provider.name,
                    _describe(outcome),
                )
            else:
                written = await repo.insert_generated_image(
                    item.id, image_url=outcome.url, metadata=outcome.metadata
                )
                report.succeeded += int(written)
        if not written:
            logger.info("image_row_exists prompt=%s", item.id)


async def _run_batches(
    ctx: GameContext,
    provider: ImageProvider,
    items: list[tuple[PromptItem, str]],
    question_text: str,
    report: GenerationReport,
) -> ProviderUnavailableError | None:
    """Generate and persist every item with ``provider``.

    Returns the unavailability error, without persisting anything, when the
    provider is down for the entire first batch. Later failures of any kind
    are per-item.
    """
    settings = ctx.settings
    size = settings.max_generation_concurrency or provider.max_concurrent
    delay_ms = (
        settings.inter_batch_delay_ms
        if settings.inter_batch_delay_ms is not None
        else provider.inter_batch_delay_ms
    )

    for start in range(0, len(items), size):
        if start > 0 and delay_ms > 0:
            await asyncio.sleep(delay_ms / 1000)
        batch = items[start : start + size]
        outcomes: list[Outcome] = await asyncio.gather(
            *(
                _generate_one(provider, text, question_text, settings.provider_timeout_seconds)
                for _, text in batch
            ),
            return_exceptions=True,
        )
        if start == 0 and all(isinstance(o, ProviderUnavailableError) for o in outcomes):
            return outcomes[0]  # type: ignore[return-value]

        await _persist(ctx, provider, [item for item, _ in batch], outcomes, report)
        logger.info(
            "generation_batch_done round=%s provider=%s batch=%d size=%d",
            report.round_id,
            provider.name,
            start // size + 1,
            len(batch),
        )
    return None


async def _attempt(
    ctx: GameContext,
    provider: ImageProvider,
    items: list[tuple[PromptItem, str]],
    question_text: str,
    report: GenerationReport,
) -> ProviderUnavailableError | None:
    try:
        provider.preflight()
    except ProviderUnavailableError as exc:
        return exc
    return await _run_batches(ctx, provider, items, question_text, report)


async def generate(
    ctx: GameContext,
    round_id: str,
    question_text: str,
    prompts: Sequence[PromptItem],
    provider: ImageProvider | None = None,
    fallback: ImageProvider | None = None,
) -> GenerationReport:
    """Generate one image per prompt and record the outcome on the round.

    ``provider`` defaults to the context's primary, with the context's
    fallback. Storage errors propagate after ``generation_error`` is set and
    the round's dispatch marker is cleared.
    """
    if provider is None:
        if ctx.provider is None:
            ctx.provider, ctx.fallback_provider = select_providers(ctx.settings)
        provider = ctx.provider
        fallback = fallback or ctx.fallback_provider

    items = [(p, sanitize_prompt(p.text)) for p in prompts]
    report = GenerationReport(round_id=round_id, provider=provider.name)
    logger.info(
        "generation_started round=%s provider=%s prompts=%d",
        round_id,
        provider.name,
        len(items),
    )

    try:
        systemic = await _attempt(ctx, provider, items, question_text, report)
        if systemic is not None and fallback is not None:
            logger.warning(
                "generation_fallback round=%s from=%s to=%s error=%s",
                round_id,
                provider.name,
                fallback.name,
                systemic,
            )
            report.provider = fallback.name
            report.fallback_used = True
            systemic = await _attempt(ctx, fallback, items, question_text, report)

        if systemic is not None:
            failed_with = fallback if report.fallback_used and fallback else provider
            await _persist(
                ctx, failed_with, [item for item, _ in items], [systemic] * len(items), report
            )
            report.error = str(systemic)
    except Exception as exc:
        # Release the dispatch claim so a redelivered verification retries the
        # prompts that never got a row.
        async with get_session(ctx.engine) as session:
            await Repository(session).patch_round(
                round_id, generation_error=_describe(exc), generation_dispatched_at=None
            )
        raise

    async with get_session(ctx.engine) as session:
        repo = Repository(session)
        if report.error:
            await repo.patch_round(round_id, generation_error=report.error)
        else:
            await repo.patch_round(
                round_id, generation_completed_at=ctx.clock(), generation_error=None
            )
        round_row = await repo.get_round(round_id)
        room_id = round_row.room_id if round_row else None

    logger.info(
        "generation_finished round=%s provider=%s ok=%d failed=%d fallback=%s",
        round_id,
        report.provider,
        report.succeeded,
        report.failed,
        report.fallback_used,
    )
    await ctx.publish(
        "round.images_ready",
        {
            "room_id": room_id,
            "round_id": round_id,
            "succeeded": report.succeeded,
            "failed": report.failed,
            "provider": report.provider,
        },
    )
    return report
