"""Vote tally and round scoring.

Winner points: every image tied at the highest tally wins and the owners
split ``points_per_win`` evenly, rounded down. Two winners at 100 points
get 50 each; three get 33 each, so a tie can pay out less than
``points_per_win`` but never more. No votes means no winner.

Participation points: each vote record earns its voter ``points_per_vote``
regardless of which image it picked.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Mapping
from datetime import datetime

from promptparty.core.errors import AlreadyScoredError
from promptparty.db.repository import Repository
from promptparty.models.round import VoteRecord

logger = logging.getLogger(__name__)


def tally_votes(
    votes: Iterable[VoteRecord],
    image_owner_by_image_id: Mapping[str, str],
) -> Counter[str]:
    """Count votes per image. Votes for images with no known owner are not counted."""
    return Counter(v.image_id for v in votes if v.image_id in image_owner_by_image_id)


def winning_images(tallies: Mapping[str, int]) -> list[str]:
    """Image IDs tied at the maximum tally; empty when nobody voted."""
    if not tallies:
        return []
    max_votes = max(tallies.values())
    if max_votes == 0:
        return []
    return sorted(image_id for image_id, count in tallies.items() if count == max_votes)


def score(
    votes: Iterable[VoteRecord],
    image_owner_by_image_id: Mapping[str, str],
    points_per_win: int = 100,
    points_per_vote: int = 10,
) -> dict[str, int]:
    """Compute per-player point deltas for one round.

    Pure function. Players who earn nothing are absent from the result.
    """
    votes = list(votes)
    deltas: Counter[str] = Counter()

    winners = winning_images(tally_votes(votes, image_owner_by_image_id))
    if winners:
        share = points_per_win // len(winners)
        for image_id in winners:
            deltas[image_owner_by_image_id[image_id]] += share

    for vote in votes:
        deltas[vote.voter_id] += points_per_vote

    return {player_id: points for player_id, points in deltas.items() if points > 0}


async def apply_round_scores(
    repo: Repository,
    round_id: str,
    points_per_win: int,
    points_per_vote: int,
    now: datetime,
) -> dict[str, int]:
    """Score a round and add the deltas to player totals, at most once.

    The ``scored_at`` marker is claimed in the same transaction as the score
    updates, so a rollback releases it. A second call raises
    ``AlreadyScoredError`` and changes nothing.
    """
    if not await repo.claim_round_marker(round_id, "scored_at", now):
        msg = f"Round {round_id} has already been scored"
        raise AlreadyScoredError(msg)

    votes = [
        VoteRecord(voter_id=v.voter_id, image_id=v.image_id)
        for v in await repo.list_votes(round_id)
    ]
    owners = {
        image.id: image.prompt.player_id
        for image in await repo.list_images_for_round(round_id)
        if image.image_url
    }
    deltas = score(votes, owners, points_per_win, points_per_vote)

    for player_id in sorted(deltas):
        await repo.patch_player_score(player_id, deltas[player_id])

    logger.info(
        "round_scored round=%s votes=%d images=%d players_awarded=%d",
        round_id,
        len(votes),
        len(owners),
        len(deltas),
    )
    return deltas
