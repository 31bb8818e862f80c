"""Tests for crowd feedback and quality scoring."""

import pytest

from floodgate.models import FeedbackType, RawRecord, VoteRequest
from floodgate.quality import (
    InvalidVoteError,
    RecordNotFoundError,
    VoteService,
    quality_score,
    wilson_lower_bound,
)
from floodgate.store import RecordStore


class TestWilsonLowerBound:
    def test_no_votes(self) -> None:
        assert wilson_lower_bound(0, 0) == 0.0

    def test_single_upvote(self) -> None:
        assert wilson_lower_bound(1, 0) == pytest.approx(0.2065, abs=1e-4)

    def test_single_downvote(self) -> None:
        assert wilson_lower_bound(0, 1) == pytest.approx(0.0, abs=1e-12)

    def test_more_evidence_raises_bound(self) -> None:
        """Same proportion, more votes, tighter interval."""
        assert wilson_lower_bound(10, 0) == pytest.approx(0.7225, abs=1e-4)
        assert wilson_lower_bound(10, 0) > wilson_lower_bound(1, 0)
        assert wilson_lower_bound(80, 20) > wilson_lower_bound(8, 2)

    def test_bounded(self) -> None:
        for up in range(0, 30, 3):
            for down in range(0, 30, 3):
                assert 0.0 <= wilson_lower_bound(up, down) <= 1.0


class TestQualityScore:
    def test_neutral_without_votes(self) -> None:
        assert quality_score(0, 0) == 0.5

    def test_flags_ignored_without_votes(self) -> None:
        assert quality_score(0, 0, flags=4) == 0.5

    def test_flag_penalty(self) -> None:
        assert quality_score(10, 0, flags=2) == pytest.approx(wilson_lower_bound(10, 0) - 0.2)

    def test_clamped_at_zero(self) -> None:
        assert quality_score(1, 0, flags=5) == 0.0

    def test_monotone_in_upvotes(self) -> None:
        scores = [quality_score(up, 5) for up in range(0, 40)]
        assert scores == sorted(scores)

    def test_monotone_in_upvotes_once_voted(self) -> None:
        scores = [quality_score(up, 0) for up in range(1, 40)]
        assert scores == sorted(scores)

    def test_first_vote_leaves_neutral_prior(self) -> None:
        """The 0.5 prior is not on the Wilson curve, so a lone upvote scores below it."""
        assert quality_score(1, 0) == pytest.approx(0.2065, abs=1e-4)
        assert quality_score(1, 0) < quality_score(0, 0)
        assert quality_score(6, 0) > quality_score(0, 0)

    def test_monotone_decreasing_in_downvotes(self) -> None:
        scores = [quality_score(5, down) for down in range(0, 40)]
        assert scores == sorted(scores, reverse=True)

    def test_bounded(self) -> None:
        for up in range(0, 20, 2):
            for down in range(0, 20, 2):
                for flags in (0, 1, 3, 12):
                    assert 0.0 <= quality_score(up, down, flags) <= 1.0


@pytest.fixture
async def service(store: RecordStore) -> VoteService:
    await store.insert_raw_records([RawRecord(id="osm:1", source_id="osm", name="Oak Park")])
    return VoteService(store)


class TestVoteService:
    """Tests for vote submission."""

    @pytest.mark.asyncio
    async def test_anonymous_upvote(self, service: VoteService, store: RecordStore) -> None:
        result = await service.submit_vote(VoteRequest(record_id="osm:1", feedback_type=FeedbackType.UPVOTE))

        assert result.success is True
        assert result.message == "Vote recorded"
        assert result.new_quality_score == pytest.approx(0.2065, abs=1e-4)
        assert result.vote_counts is not None
        assert (result.vote_counts.upvotes, result.vote_counts.downvotes) == (1, 0)
        record = await store.get_raw_record("osm:1")
        assert record is not None
        assert record.quality_score == pytest.approx(0.2065, abs=1e-4)

    @pytest.mark.asyncio
    async def test_anonymous_votes_accumulate(self, service: VoteService) -> None:
        request = {"record_id": "osm:1", "feedback_type": "upvote"}

        await service.submit_vote(request)
        result = await service.submit_vote(request)

        assert result.vote_counts is not None
        assert result.vote_counts.upvotes == 2

    @pytest.mark.asyncio
    async def test_identified_vote_counted_once(self, service: VoteService) -> None:
        request = {"record_id": "osm:1", "feedback_type": "upvote"}

        await service.submit_vote(request, actor_id="alice")
        result = await service.submit_vote(request, actor_id="alice")

        assert result.vote_counts is not None
        assert result.vote_counts.upvotes == 1

    @pytest.mark.asyncio
    async def test_identified_vote_can_change(self, service: VoteService) -> None:
        await service.submit_vote({"record_id": "osm:1", "feedback_type": "upvote"}, actor_id="alice")
        result = await service.submit_vote({"record_id": "osm:1", "feedback_type": "downvote"}, actor_id="alice")

        assert result.vote_counts is not None
        assert (result.vote_counts.upvotes, result.vote_counts.downvotes) == (0, 1)
        assert result.new_quality_score == 0.0

    @pytest.mark.asyncio
    async def test_anonymous_and_identified_combine(self, service: VoteService) -> None:
        await service.submit_vote({"record_id": "osm:1", "feedback_type": "upvote"})
        await service.submit_vote({"record_id": "osm:1", "feedback_type": "upvote"}, actor_id="alice")
        result = await service.submit_vote({"record_id": "osm:1", "feedback_type": "flag"})

        assert result.vote_counts is not None
        assert (result.vote_counts.upvotes, result.vote_counts.flags) == (2, 1)
        assert result.new_quality_score == round(quality_score(2, 0, 1), 4)

    @pytest.mark.asyncio
    async def test_correction(self, service: VoteService) -> None:
        result = await service.submit_vote(
            {"record_id": "osm:1", "feedback_type": "correction", "correction_data": {"name": "Oak Grove Park"}},
            actor_id="bob",
        )

        assert result.message == "Correction submitted"
        assert result.new_quality_score == 0.5
        assert result.vote_counts is not None
        assert result.vote_counts.total == 0

    @pytest.mark.asyncio
    async def test_correction_requires_data(self, service: VoteService) -> None:
        with pytest.raises(InvalidVoteError):
            await service.submit_vote({"record_id": "osm:1", "feedback_type": "correction"})

    @pytest.mark.asyncio
    async def test_unknown_feedback_type(self, service: VoteService) -> None:
        with pytest.raises(InvalidVoteError):
            await service.submit_vote({"record_id": "osm:1", "feedback_type": "love"})

    @pytest.mark.asyncio
    async def test_missing_record(self, service: VoteService) -> None:
        with pytest.raises(RecordNotFoundError, match="Record not found: osm:404"):
            await service.submit_vote({"record_id": "osm:404", "feedback_type": "upvote"})
