"""Errors raised when a request would break a game rule.

All rule errors subclass ``ValueError`` so callers that only care about
"bad request" can catch that; ``NotFoundError`` is a ``LookupError``.
"""

from __future__ import annotations


class GameRuleError(ValueError):
    """A request that would violate a game invariant."""


class PhaseError(GameRuleError):
    """The action is not allowed in the round's (or room's) current phase."""


class InvalidSubmissionError(GameRuleError):
    """Malformed prompt text, unknown image, or a player outside the room."""


class SelfVoteError(GameRuleError):
    """A player tried to vote for the image generated from their own prompt."""


class NotHostError(GameRuleError):
    """Only the room host may do this."""


class AlreadyScoredError(GameRuleError):
    """Scores for this round were already applied."""


class NotFoundError(LookupError):
    """A referenced room, round, player, or image does not exist."""
