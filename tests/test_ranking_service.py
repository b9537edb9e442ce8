"""Tests for the initial ranking build and the replenish protocol."""

import json

import httpx
import pytest

from quizrec.models import RankingEntry
from quizrec.protocols.backend_client import BackendClient
from quizrec.ranking.rankers import PassThroughRanker
from quizrec.ranking.repository import InMemoryRankingRepository
from quizrec.ranking.service import LocalRankingService, RemoteRankingService

from conftest import make_product

USER = "shop_user_test"
DAY = "2024-05-01"


class TopRanker:
    """Returns the first *n* non-excluded products; records its calls."""

    def __init__(self, n, fail=False):
        self.n = n
        self.fail = fail
        self.calls = []

    async def rank(self, products, answers, exclude_ids=()):
        self.calls.append(set(exclude_ids))
        if self.fail:
            raise RuntimeError("ranker down")
        return [
            RankingEntry(product_id=p.product_id, score=0.8, reason="top")
            for p in products
            if p.product_id not in exclude_ids
        ][: self.n]


def assert_dense(ranked, start=1):
    assert [r.rank for r in ranked] == list(range(start, start + len(ranked)))


@pytest.fixture
def pool():
    return [make_product(f"p{i}") for i in range(1, 6)]


@pytest.fixture
def repository():
    return InMemoryRankingRepository()


class TestLocalBuild:
    async def test_pass_through_build(self, repository, pool):
        service = LocalRankingService(PassThroughRanker(), repository, USER, DAY)
        outcome = await service.build(pool, {"1": "casual"})
        assert [r.product_id for r in outcome.ranked] == [p.product_id for p in pool]
        assert_dense(outcome.ranked)
        assert all(r.context_version == 1 and r.score == 1.0 for r in outcome.ranked)
        assert outcome.has_more is False

    async def test_has_more_when_ranker_truncates(self, repository, pool):
        service = LocalRankingService(TopRanker(2), repository, USER, DAY)
        outcome = await service.build(pool, {})
        assert len(outcome.ranked) == 2
        assert outcome.has_more is True

    async def test_rebuild_replaces_previous_rows(self, repository, pool):
        service = LocalRankingService(TopRanker(2), repository, USER, DAY)
        await service.build(pool, {})
        await service.build(pool[2:], {})
        rows = await repository.ranked(USER, DAY)
        assert [r.product_id for r in rows] == ["p3", "p4"]


class TestLocalReplenish:
    async def test_empty_candidate_pool_is_a_no_op(self, repository):
        # Scenario D: nothing left once p1 and p2 are shown.
        service = LocalRankingService(TopRanker(5), repository, USER, DAY)
        await service.build([make_product("p1"), make_product("p2")], {})
        result = await service.replenish(["p1", "p2"])
        assert result.added == 0
        assert result.products == []

    async def test_replenish_before_any_build(self, repository):
        service = LocalRankingService(TopRanker(5), repository, USER, DAY)
        result = await service.replenish(["p1", "p2"])
        assert result.added == 0
        assert result.context_version is None

    async def test_continues_ranks_under_a_new_version(self, repository, pool):
        ranker = TopRanker(2)
        service = LocalRankingService(ranker, repository, USER, DAY)
        outcome = await service.build(pool, {})
        shown = [r.product_id for r in outcome.ranked]

        result = await service.replenish(shown)
        assert result.added == 2
        assert result.context_version == 2
        assert [r.product_id for r in result.products] == ["p3", "p4"]
        assert_dense(result.products, start=3)
        assert ranker.calls[-1] == set(shown)

        shown += [r.product_id for r in result.products]
        third = await service.replenish(shown)
        assert third.context_version == 3
        assert [r.product_id for r in third.products] == ["p5"]
        assert_dense(third.products, start=5)

    async def test_never_returns_excluded_ids(self, repository, pool):
        service = LocalRankingService(PassThroughRanker(), repository, USER, DAY)
        await service.build(pool, {})
        result = await service.replenish(["p1", "p3"])
        assert {r.product_id for r in result.products}.isdisjoint({"p1", "p3"})

    async def test_base_rank_covers_everything_shown(self, repository, pool):
        # Shown list is longer than anything recorded: ranks continue after it.
        service = LocalRankingService(TopRanker(1), repository, USER, DAY)
        await service.build(pool, {})
        result = await service.replenish(["p1", "p2", "p3"])
        assert result.products[0].rank == 4

    async def test_ranker_failure_records_nothing(self, repository, pool):
        ranker = TopRanker(2)
        service = LocalRankingService(ranker, repository, USER, DAY)
        await service.build(pool, {})
        ranker.fail = True
        with pytest.raises(RuntimeError):
            await service.replenish(["p1", "p2"])
        assert await repository.max_context_version(USER, DAY) == 1


def backend_transport(handler_log, *, replenish_added=2, fail_build=False, empty_page=False):
    def handler(request: httpx.Request) -> httpx.Response:
        handler_log.append((request.method, request.url.path, dict(request.url.params)))
        path = request.url.path
        if path.endswith("/ranking/build"):
            if fail_build:
                return httpx.Response(400, json={"ok": False, "error": "no products"})
            return httpx.Response(200, json={"ok": True, "top": [{"product_id": "p2", "score": 0.9}]})
        if path.endswith("/ranking/replenish"):
            return httpx.Response(200, json={"ok": True, "added": replenish_added})
        if path.endswith("/ranking"):
            offset = int(request.url.params.get("offset", 0))
            version = 1 if not any(p.endswith("/replenish") for _, p, _ in handler_log) else 2
            if empty_page:
                return httpx.Response(200, json={"ok": True, "products": [], "total": 0, "limit": 20})
            rows = (
                [
                    {"product_id": "p2", "score": 0.9, "reason": "match"},
                    {"product_id": "p1", "score": 0.7, "reason": "close"},
                ]
                if version == 1
                else [
                    {"product_id": "p1", "score": 0.7},
                    {"product_id": "p4", "score": 0.6, "title": "Remote only"},
                    {"product_id": "p3", "score": 2.0},
                ]
            )
            return httpx.Response(
                200,
                json={
                    "ok": True,
                    "products": rows,
                    "total": len(rows),
                    "limit": int(request.url.params["limit"]),
                    "offset": offset,
                    "context_version": version,
                },
            )
        return httpx.Response(404, json={"ok": False, "error": "not found"})

    return httpx.MockTransport(handler)


class TestRemoteRankingService:
    async def test_build_hydrates_from_pool(self, pool):
        log = []
        client = BackendClient("http://backend.test/api", transport=backend_transport(log))
        service = RemoteRankingService(client, USER, DAY, page_size=20, past_days=5)

        outcome = await service.build(pool, {})
        assert [r.product_id for r in outcome.ranked] == ["p2", "p1"]
        assert outcome.ranked[0].title == "Product p2"
        assert outcome.ranked[0].reason == "match"
        assert_dense(outcome.ranked)
        assert outcome.has_more is False
        assert [path for _, path, _ in log] == ["/api/ranking/build", "/api/ranking"]
        await client.close()

    async def test_replenish_filters_shown_and_continues_ranks(self, pool):
        log = []
        client = BackendClient("http://backend.test/api", transport=backend_transport(log))
        service = RemoteRankingService(client, USER, DAY)
        await service.build(pool, {})

        result = await service.replenish(["p2", "p1"])
        assert [r.product_id for r in result.products] == ["p4", "p3"]
        assert result.products[0].title == "Product p4"
        assert result.products[1].score == 1.0
        assert_dense(result.products, start=3)
        assert result.context_version == 2
        await client.close()

    async def test_replenish_nothing_added(self, pool):
        log = []
        client = BackendClient(
            "http://backend.test/api", transport=backend_transport(log, replenish_added=0)
        )
        service = RemoteRankingService(client, USER, DAY)
        result = await service.replenish(["p1"])
        assert result.added == 0
        assert [path for _, path, _ in log] == ["/api/ranking/replenish"]
        await client.close()

    async def test_build_error_propagates(self, pool):
        log = []
        client = BackendClient(
            "http://backend.test/api", transport=backend_transport(log, fail_build=True)
        )
        service = RemoteRankingService(client, USER, DAY)
        with pytest.raises(Exception, match="no products"):
            await service.build(pool, {})
        await client.close()

    async def test_build_uses_top_rows_when_page_is_empty(self, pool):
        log = []
        client = BackendClient(
            "http://backend.test/api", transport=backend_transport(log, empty_page=True)
        )
        service = RemoteRankingService(client, USER, DAY)

        outcome = await service.build(pool, {})
        assert [r.product_id for r in outcome.ranked] == ["p2"]
        assert outcome.ranked[0].score == 0.9
        assert outcome.ranked[0].title == "Product p2"
        assert_dense(outcome.ranked)
        assert outcome.has_more is False
        await client.close()
