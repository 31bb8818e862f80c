"""Crowd feedback and record quality scoring.

The quality score is the lower bound of the Wilson score interval for the
upvote proportion, penalized by 0.1 per flag and clamped to [0, 1]. With no
up or down votes the score is the neutral 0.5.
"""

import logging
import math
from typing import Any

from pydantic import ValidationError

from floodgate.models import FeedbackType, VoteRequest, VoteResult, VoteTally
from floodgate.store import RecordStore

logger = logging.getLogger(__name__)

# 95% confidence
DEFAULT_Z = 1.96
FLAG_PENALTY = 0.1
NEUTRAL_SCORE = 0.5


class QualityError(Exception):
    """Base exception for vote handling."""

    pass


class RecordNotFoundError(QualityError):
    """Raised when a vote targets a record that does not exist."""

    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"Record not found: {record_id}")


class InvalidVoteError(QualityError):
    """Raised when a vote payload fails validation."""

    pass


def wilson_lower_bound(upvotes: int, downvotes: int, z: float = DEFAULT_Z) -> float:
    """Lower bound of the Wilson score interval for the upvote proportion.

    Args:
        upvotes: Positive votes.
        downvotes: Negative votes.
        z: Normal quantile for the desired confidence (1.96 for 95%).

    Returns:
        Lower bound in [0, 1]; 0.0 when there are no votes.
    """
    n = upvotes + downvotes
    if n == 0:
        return 0.0
    phat = upvotes / n
    z2 = z * z
    center = phat + z2 / (2 * n)
    margin = z * math.sqrt((phat * (1 - phat) + z2 / (4 * n)) / n)
    return (center - margin) / (1 + z2 / n)


def quality_score(upvotes: int, downvotes: int, flags: int = 0) -> float:
    """Quality score for a vote tally.

    Flags only apply once the record has at least one up or down vote. The
    unvoted score is a fixed neutral prior, so the score is monotone in
    votes only from the first up or down vote onward.

    >>> quality_score(0, 0, 3)
    0.5
    """
    if upvotes + downvotes == 0:
        return NEUTRAL_SCORE
    score = wilson_lower_bound(upvotes, downvotes) - FLAG_PENALTY * flags
    return max(0.0, min(1.0, score))


class VoteService:
    """Applies votes to records and keeps their quality score current."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    async def submit_vote(
        self,
        request: VoteRequest | dict[str, Any],
        actor_id: str | None = None,
    ) -> VoteResult:
        """Record a vote and recompute the record's quality score.

        Identified actors have one vote per record; a repeat vote replaces
        their earlier one. Anonymous votes go straight into the aggregate
        counters, so replaying one counts it again.

        Args:
            request: Vote payload.
            actor_id: Identified voter, or None for anonymous.

        Returns:
            VoteResult with the new score and tally.

        Raises:
            InvalidVoteError: If a dict payload fails validation.
            RecordNotFoundError: If the record does not exist.
        """
        if not isinstance(request, VoteRequest):
            try:
                request = VoteRequest.model_validate(request)
            except ValidationError as e:
                raise InvalidVoteError(f"Invalid vote: {e.error_count()} validation error(s)") from e

        if await self._store.get_tally(request.record_id) is None:
            raise RecordNotFoundError(request.record_id)

        if actor_id:
            await self._store.upsert_feedback(
                request.record_id,
                actor_id,
                request.feedback_type,
                request.correction_data,
            )
            tally = await self._store.tally_feedback(request.record_id)
        else:
            tally = await self._store.increment_tally(request.record_id, request.feedback_type)
            if tally is None:
                raise RecordNotFoundError(request.record_id)

        score = quality_score(tally.upvotes, tally.downvotes, tally.flags)
        await self._store.save_quality(request.record_id, tally, score)

        logger.info(
            f"Vote {request.feedback_type.value} on {request.record_id}: "
            f"quality {score:.3f} ({tally.upvotes}+/{tally.downvotes}-/{tally.flags} flags)"
        )
        message = (
            "Correction submitted"
            if request.feedback_type is FeedbackType.CORRECTION
            else "Vote recorded"
        )
        return VoteResult(
            success=True,
            message=message,
            new_quality_score=round(score, 4),
            vote_counts=VoteTally(
                upvotes=tally.upvotes, downvotes=tally.downvotes, flags=tally.flags
            ),
        )


__all__ = [
    "InvalidVoteError",
    "QualityError",
    "RecordNotFoundError",
    "VoteService",
    "quality_score",
    "wilson_lower_bound",
]
