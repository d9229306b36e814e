"""Bridge from the prompt phase to image generation.

The Prompt -> Generating transition fires at the same moment players are
finishing their last submissions, so dispatching immediately can race ahead
of their writes and see no prompts. ``verify_and_dispatch`` re-reads the
prompts with linear backoff and hands them to the dispatcher on the first
attempt that sees any. It never dispatches a round twice: the
``generation_dispatched_at`` marker is claimed before the dispatcher runs,
and the dispatcher releases it again only when it fails with a storage error.
"""

from __future__ import annotations

import logging

from promptparty.core import dispatcher
from promptparty.core.context import GameContext
from promptparty.db.engine import get_session
from promptparty.db.repository import Repository
from promptparty.models.round import PromptItem

logger = logging.getLogger(__name__)


async def verify_and_dispatch(ctx: GameContext, round_id: str, attempt: int = 0) -> None:
    max_attempts = ctx.settings.max_verification_retries

    async with get_session(ctx.engine) as session:
        repo = Repository(session)
        round_row = await repo.get_round(round_id)
        if round_row is None or round_row.status != "generating":
            logger.info("verify_skipped round=%s reason=not_generating", round_id)
            return
        if round_row.generation_dispatched_at is not None:
            logger.info("verify_skipped round=%s reason=already_dispatched", round_id)
            return

        prompts = await repo.list_prompts(round_id)
        question_text = round_row.question_text
        deadline = round_row.phase_deadline

        if prompts:
            if not await repo.claim_round_marker(
                round_id, "generation_dispatched_at", ctx.clock()
            ):
                return
            # A redelivery after a failed dispatch only regenerates missing rows.
            done = {image.prompt_id for image in await repo.list_images_for_round(round_id)}
            items = [
                PromptItem(id=p.id, player_id=p.player_id, text=p.text)
                for p in prompts
                if p.id not in done
            ]
            if not items:
                await repo.patch_round(
                    round_id, generation_completed_at=ctx.clock(), generation_error=None
                )
                logger.info("verify_skipped round=%s reason=images_exist", round_id)
                return
        elif attempt >= max_attempts:
            await repo.patch_round(
                round_id,
                generation_error=f"No prompts found after {attempt + 1} attempts",
            )
            items = []
        else:
            items = []

    if items:
        logger.info(
            "verify_dispatching round=%s attempt=%d prompts=%d", round_id, attempt, len(items)
        )
        await dispatcher.generate(ctx, round_id, question_text, items)
    elif attempt < max_attempts:
        delay_ms = (attempt + 1) * ctx.settings.verification_base_delay_ms
        logger.info("verify_retry round=%s attempt=%d delay_ms=%d", round_id, attempt, delay_ms)
        ctx.timers.run_after(
            delay_ms, "verify_and_dispatch", round_id=round_id, attempt=attempt + 1
        )
    else:
        logger.warning("verify_gave_up round=%s attempts=%d", round_id, attempt + 1)
        ctx.timers.run_at(
            deadline, "advance_phase", round_id=round_id, expected_status="generating"
        )
