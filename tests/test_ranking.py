"""Tests for batch and on-demand ranking."""
import asyncio
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from jobcatalog.config import ScoringSettings
from jobcatalog.domain.matching import RelevanceScorer, UserSearchCriteria
from jobcatalog.ranking import RankingService, ScoreCache, criteria_key


class SlowScorer(RelevanceScorer):
    """Scorer that takes ``delay`` seconds per job."""

    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    def score(self, job, criteria, now=None):
        time.sleep(self.delay)
        return super().score(job, criteria, now)


class CancellingScorer(RelevanceScorer):
    """Scorer that sets a cancel event once it has scored ``after`` jobs."""

    def __init__(self, loop, event, after):
        super().__init__()
        self.loop = loop
        self.event = event
        self.after = after
        self.calls = 0

    def score(self, job, criteria, now=None):
        self.calls += 1
        if self.calls == self.after:
            self.loop.call_soon_threadsafe(self.event.set)
        return super().score(job, criteria, now)


class FailingScorer(RelevanceScorer):
    def score(self, job, criteria, now=None):
        if job.id == "INDEED_c":
            raise KeyError("salary")
        return super().score(job, criteria, now)


@pytest.fixture
def catalog(ingest, make_posting, store):
    """Four unrelated jobs: a and d share the best skill match."""
    for external_id, skills in (("a", ["Python", "SQL"]), ("b", ["Python", "AWS"]),
                                ("c", ["Rust"]), ("d", ["Python", "SQL"])):
        ingest(make_posting(
            external_id,
            company=f"Company {external_id}",
            skills=skills,
            description=f"Work with {' and '.join(skills)}",
        ))
    return store


@pytest.fixture
def criteria():
    return UserSearchCriteria(skills=["Python", "SQL"])


@pytest.fixture
def service(catalog, metrics, error_handler):
    return RankingService(catalog, metrics=metrics, error_handler=error_handler)


class TestScoreCache:
    """Test the score cache."""

    def test_entries_expire_after_ttl(self, scorer_breakdown, criteria):
        ticks = [0.0]
        cache = ScoreCache(ttl_seconds=60, clock=lambda: ticks[0])
        cache.set("u1", criteria, scorer_breakdown)

        ticks[0] = 59.0
        assert cache.get("u1", criteria, "INDEED_a") is scorer_breakdown
        ticks[0] = 60.0
        assert cache.get("u1", criteria, "INDEED_a") is None
        assert cache.get("u1", criteria, "INDEED_a", allow_stale=True) is scorer_breakdown

    def test_key_includes_user_and_criteria(self, scorer_breakdown, criteria):
        cache = ScoreCache()
        cache.set("u1", criteria, scorer_breakdown)

        assert cache.get("u2", criteria, "INDEED_a") is None
        assert cache.get("u1", UserSearchCriteria(skills=["Go"]), "INDEED_a") is None
        assert criteria_key(criteria) == criteria_key(UserSearchCriteria(skills=["Python", "SQL"]))

    def test_oldest_entries_evicted(self, scorer_breakdown, criteria):
        cache = ScoreCache(max_entries=2)
        for user in ("u1", "u2", "u3"):
            cache.set(user, criteria, scorer_breakdown)

        assert len(cache) == 2
        assert cache.get("u1", criteria, "INDEED_a") is None
        assert cache.get("u3", criteria, "INDEED_a") is not None

    def test_invalidate(self, scorer_breakdown, criteria):
        cache = ScoreCache()
        cache.set("u1", criteria, scorer_breakdown)
        cache.set("u2", criteria, scorer_breakdown)

        cache.invalidate("u1")
        assert len(cache) == 1
        cache.invalidate()
        assert len(cache) == 0

    def test_size_is_consistent_under_concurrent_writes(self, scorer_breakdown, criteria):
        cache = ScoreCache(max_entries=50)

        def fill(worker):
            for i in range(100):
                cache.set(f"u{worker}-{i}", criteria, scorer_breakdown)
                assert len(cache) <= 50

        with ThreadPoolExecutor(max_workers=4) as pool:
            list(pool.map(fill, range(4)))

        assert len(cache) == 50


@pytest.fixture
def scorer_breakdown(catalog, criteria, now):
    return RelevanceScorer().score(catalog.get("INDEED_a"), criteria, now)


class TestBatchScoring:
    """Test scoring the catalog in chunks."""

    @pytest.mark.asyncio
    async def test_scores_whole_catalog(self, service, criteria, now, metrics):
        result = await service.score_batch("u1", criteria, now=now)

        assert result.complete
        assert len(result.results) == 4
        assert result.failed == 0
        assert metrics.scores_computed == 4

    @pytest.mark.asyncio
    async def test_second_run_hits_cache(self, service, criteria, now):
        await service.score_batch("u1", criteria, now=now)
        result = await service.score_batch("u1", criteria, now=now)

        assert result.cache_hits == 4
        assert len(service.cache) == 4

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, service, criteria, now):
        event = asyncio.Event()
        event.set()

        result = await service.score_batch("u1", criteria, now=now, cancel_event=event)

        assert result.cancelled
        assert result.results == []

    @pytest.mark.asyncio
    async def test_cancel_between_chunks(self, catalog, criteria, now, metrics):
        event = asyncio.Event()
        scorer = CancellingScorer(asyncio.get_running_loop(), event, after=2)
        service = RankingService(catalog, scorer=scorer, chunk_size=1, metrics=metrics)

        result = await service.score_batch("u1", criteria, now=now, cancel_event=event)

        assert result.cancelled
        assert not result.complete
        assert len(result.results) == 2

    @pytest.mark.asyncio
    async def test_deadline_stops_batch(self, catalog, criteria, now, metrics):
        service = RankingService(catalog, scorer=SlowScorer(0.05), chunk_size=1, metrics=metrics)

        result = await service.score_batch("u1", criteria, now=now, deadline=0.12)

        assert result.deadline_exceeded
        assert 0 < len(result.results) < 4

    @pytest.mark.asyncio
    async def test_configured_deadline_stops_batch(self, catalog, criteria, now, metrics):
        settings = ScoringSettings(chunk_size=1, batch_deadline=0.12)
        service = RankingService.from_settings(catalog, settings, metrics=metrics)
        service.scorer = SlowScorer(0.05)

        result = await service.score_batch("u1", criteria, now=now)

        assert service.batch_deadline == 0.12
        assert result.deadline_exceeded
        assert 0 < len(result.results) < 4

    @pytest.mark.asyncio
    async def test_explicit_deadline_overrides_configured_one(self, catalog, criteria, now, metrics):
        service = RankingService(catalog, scorer=SlowScorer(0.05), chunk_size=1, batch_deadline=0.01,
                                 metrics=metrics)

        result = await service.score_batch("u1", criteria, now=now, deadline=5)

        assert result.complete
        assert len(result.results) == 4

    @pytest.mark.asyncio
    async def test_failed_job_does_not_stop_batch(self, catalog, criteria, now, metrics, error_handler):
        service = RankingService(catalog, scorer=FailingScorer(), metrics=metrics, error_handler=error_handler)

        result = await service.score_batch("u1", criteria, now=now)

        assert result.failed == 1
        assert len(result.results) == 3
        assert metrics.scoring_failures == 1
        assert error_handler.error_counts["score:INDEED_c"] == 1


class TestOnDemandScoring:
    """Test single-job scoring under a time budget."""

    @pytest.mark.asyncio
    async def test_fresh_score_then_cache(self, service, catalog, criteria, now, metrics):
        job = catalog.get("INDEED_a")

        first = await service.score_on_demand("u1", job, criteria, now=now)
        second = await service.score_on_demand("u1", job, criteria, now=now)

        assert not first.partial
        assert second is first
        assert metrics.score_cache_hits == 1

    @pytest.mark.asyncio
    async def test_timeout_returns_neutral_partial(self, catalog, criteria, now, metrics):
        service = RankingService(catalog, scorer=SlowScorer(0.2), on_demand_timeout=0.02, metrics=metrics)
        job = catalog.get("INDEED_a")

        breakdown = await service.score_on_demand("u1", job, criteria, now=now)

        assert breakdown.partial
        assert breakdown.total == 50.0
        assert metrics.scoring_timeouts == 1

        await asyncio.sleep(0.3)
        filled = service.cache.get("u1", criteria, job.id)
        assert filled is not None
        assert not filled.partial

    @pytest.mark.asyncio
    async def test_timeout_falls_back_to_stale_cache(self, catalog, criteria, now, scorer_breakdown, metrics):
        ticks = [0.0]
        cache = ScoreCache(ttl_seconds=60, clock=lambda: ticks[0])
        cache.set("u1", criteria, scorer_breakdown)
        ticks[0] = 120.0
        service = RankingService(
            catalog, scorer=SlowScorer(0.2), cache=cache, on_demand_timeout=0.02, metrics=metrics
        )

        breakdown = await service.score_on_demand("u1", catalog.get("INDEED_a"), criteria, now=now)

        assert breakdown.partial
        assert breakdown.total == scorer_breakdown.total
        assert not scorer_breakdown.partial
        await asyncio.sleep(0.3)


class TestRankedPages:
    """Test ranked, paginated results."""

    @pytest.mark.asyncio
    async def test_sorted_by_total_then_id(self, service, criteria, now):
        page = await service.get_scored_jobs("u1", criteria, now=now)

        assert [job.id for job, _ in page] == ["INDEED_a", "INDEED_d", "INDEED_b", "INDEED_c"]
        assert [b.total for _, b in page] == [72.5, 72.5, 55.0, 37.5]
        assert page[0][0].relevance_score == 72.5

    @pytest.mark.asyncio
    async def test_newer_posting_wins_tie(self, ingest, make_posting, catalog, criteria, now):
        later = now.replace(hour=13)
        ingest(make_posting("e", company="Company e", fetched_at=later, skills=["Python", "SQL"],
                            description="Work with Python and SQL"))
        service = RankingService(catalog, scorer=RelevanceScorer(recency_half_life_days=10 ** 9))

        page = await service.get_scored_jobs("u1", criteria, now=later, page_size=3)

        assert [job.id for job, _ in page] == ["INDEED_e", "INDEED_a", "INDEED_d"]

    @pytest.mark.asyncio
    async def test_pagination(self, service, criteria, now):
        first = await service.get_scored_jobs("u1", criteria, page=1, page_size=3, now=now)
        second = await service.get_scored_jobs("u1", criteria, page=2, page_size=3, now=now)
        beyond = await service.get_scored_jobs("u1", criteria, page=3, page_size=3, now=now)

        assert len(first) == 3
        assert [job.id for job, _ in second] == ["INDEED_c"]
        assert beyond == []

    @pytest.mark.asyncio
    async def test_cutoff_and_excluded_keywords(self, catalog, now, metrics):
        service = RankingService(catalog, score_cutoff=50, metrics=metrics)
        criteria = UserSearchCriteria(skills=["Python", "SQL"], exclude_keywords=["aws"])

        page = await service.get_scored_jobs("u1", criteria, now=now)

        assert [job.id for job, _ in page] == ["INDEED_a", "INDEED_d"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("page,page_size", [(0, 20), (1, 0)])
    async def test_invalid_page(self, service, criteria, page, page_size):
        with pytest.raises(ValueError):
            await service.get_scored_jobs("u1", criteria, page=page, page_size=page_size)

    @pytest.mark.asyncio
    async def test_duplicates_never_ranked(self, ingest, make_posting, catalog, criteria, now):
        ingest(make_posting("a2", company="Company a", skills=["Python", "SQL"], description="Repost"))
        service = RankingService(catalog)

        page = await service.get_scored_jobs("u1", criteria, now=now)

        assert "INDEED_a2" not in [job.id for job, _ in page]
        assert len(page) == 4


def test_from_settings(store):
    settings = ScoringSettings(cache_ttl=5, chunk_size=10, on_demand_timeout=0.1, score_cutoff=20)
    service = RankingService.from_settings(store, settings)

    assert service.cache.ttl_seconds == 5
    assert service.chunk_size == 10
    assert service.on_demand_timeout == 0.1
    assert service.score_cutoff == 20
    assert service.scorer.recommended_threshold == 70
