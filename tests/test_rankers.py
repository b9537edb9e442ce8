"""Tests for ranking policies and their helpers."""

import pytest

from quizrec.models import RankingEntry
from quizrec.ranking.rankers import (
    FALLBACK_REASON,
    PASS_THROUGH_REASON,
    LLMRanker,
    PassThroughRanker,
    RankingError,
    clean_entries,
    create_ranker,
    fallback_entries,
    hydrate,
    parse_json_payload,
)

from conftest import make_product


class ScriptedLLMRanker(LLMRanker):
    """LLM ranker whose model answer is fixed."""

    def __init__(self, settings, answer, limit=None):
        super().__init__(settings, limit=limit)
        self.answer = answer
        self.prompts = []

    async def _complete(self, system, prompt):
        self.prompts.append(prompt)
        return self.answer


@pytest.fixture
def pool():
    return [make_product(pid) for pid in ("p1", "p2", "p3", "p4")]


class TestPassThrough:
    async def test_keeps_order_with_full_score(self, pool):
        entries = await PassThroughRanker().rank(pool, {})
        assert [e.product_id for e in entries] == ["p1", "p2", "p3", "p4"]
        assert all(e.score == 1.0 for e in entries)
        assert all(e.reason == PASS_THROUGH_REASON for e in entries)

    async def test_excludes_and_dedupes(self, pool):
        entries = await PassThroughRanker().rank(pool + [make_product("p1")], {}, exclude_ids={"p2"})
        assert [e.product_id for e in entries] == ["p1", "p3", "p4"]


class TestHelpers:
    def test_fallback_scores_decay(self, pool):
        entries = fallback_entries(pool, limit=4)
        assert [e.score for e in entries] == [1.0, 0.75, 0.5, 0.25]
        assert all(e.reason == FALLBACK_REASON for e in entries)

    def test_fallback_respects_limit(self, pool):
        assert len(fallback_entries(pool, limit=2)) == 2

    def test_clean_entries(self):
        rows = [
            {"product_id": "a", "score": 1.7, "reason": "great"},
            {"product_id": "a", "score": 0.1},
            {"product_id": "b", "score": "bad", "reason": 5},
            {"product_id": "x", "score": 0.5},
            {"product_id": "c", "score": -1},
            {"score": 0.9},
            "junk",
        ]
        entries = clean_entries(rows, exclude_ids={"x"}, known_ids={"a", "b", "c"})
        assert [(e.product_id, e.score, e.reason) for e in entries] == [
            ("a", 1.0, "great"),
            ("b", 0.0, ""),
            ("c", 0.0, ""),
        ]

    def test_clean_entries_limit(self):
        rows = [{"product_id": str(i), "score": 0.5} for i in range(30)]
        assert len(clean_entries(rows, limit=20)) == 20

    @pytest.mark.parametrize(
        "text",
        [
            '[{"product_id": "a"}]',
            'Here you go:\n```json\n[{"product_id": "a"}]\n```',
            'Sure! [{"product_id": "a"}] hope that helps',
        ],
    )
    def test_parse_json_payload(self, text):
        assert parse_json_payload(text) == [{"product_id": "a"}]

    @pytest.mark.parametrize("text", ["", "   ", "no json here"])
    def test_parse_json_payload_rejects(self, text):
        with pytest.raises(ValueError):
            parse_json_payload(text)

    def test_hydrate_dense_ranks(self, pool):
        entries = [
            RankingEntry(product_id="p3", score=0.9, reason="r"),
            RankingEntry(product_id="ghost", score=0.5),
            RankingEntry(product_id="p1", score=0.4),
        ]
        ranked = hydrate(entries, pool, base_rank=5, context_version=2)
        assert [r.rank for r in ranked] == [5, 6, 7]
        assert [r.product_id for r in ranked] == ["p3", "ghost", "p1"]
        assert ranked[0].title == "Product p3"
        assert ranked[1].title == ""
        assert all(r.context_version == 2 for r in ranked)

    def test_hydrate_keeps_raw(self):
        product = make_product("p1", raw={"id": "p1"})
        ranked = hydrate([RankingEntry(product_id="p1", score=1.0)], [product])
        assert ranked[0].raw == {"id": "p1"}


class TestLLMRanker:
    async def test_parses_model_answer(self, settings, pool):
        answer = '```json\n[{"product_id": "p2", "score": 0.9, "reason": "fits"}, {"product_id": "p9", "score": 1}]\n```'
        ranker = ScriptedLLMRanker(settings, answer)
        entries = await ranker.rank(pool, {"1": "casual"})
        assert [(e.product_id, e.score, e.reason) for e in entries] == [("p2", 0.9, "fits")]
        assert '"today_responses": {"1": "casual"}' in ranker.prompts[0]

    async def test_items_envelope(self, settings, pool):
        ranker = ScriptedLLMRanker(settings, '{"items": [{"product_id": "p1", "score": 0.3}]}')
        entries = await ranker.rank(pool, {})
        assert [e.product_id for e in entries] == ["p1"]

    async def test_malformed_answer_falls_back(self, settings, pool):
        ranker = ScriptedLLMRanker(settings, "I cannot rank these.", limit=20)
        entries = await ranker.rank(pool, {})
        assert [e.product_id for e in entries] == ["p1", "p2", "p3", "p4"]
        assert entries[0].score == 1.0
        assert entries[1].score == pytest.approx(0.95)
        assert all(e.reason == FALLBACK_REASON for e in entries)

    async def test_non_list_answer_falls_back(self, settings, pool):
        ranker = ScriptedLLMRanker(settings, '{"status": "ok"}')
        entries = await ranker.rank(pool, {})
        assert all(e.reason == FALLBACK_REASON for e in entries)

    async def test_excluded_products_never_returned(self, settings, pool):
        answer = '[{"product_id": "p1", "score": 1}, {"product_id": "p2", "score": 1}]'
        ranker = ScriptedLLMRanker(settings, answer)
        entries = await ranker.rank(pool, {}, exclude_ids={"p1"})
        assert [e.product_id for e in entries] == ["p2"]

    async def test_no_candidates_skips_model(self, settings, pool):
        ranker = ScriptedLLMRanker(settings, "[]")
        assert await ranker.rank(pool, {}, exclude_ids={p.product_id for p in pool}) == []
        assert ranker.prompts == []

    async def test_no_provider_raises(self, settings, pool):
        with pytest.raises(RankingError):
            await LLMRanker(settings).rank(pool, {})


class TestCreateRanker:
    def test_policies(self, settings):
        assert isinstance(create_ranker(settings), PassThroughRanker)
        assert isinstance(create_ranker(settings.model_copy(update={"ranking_policy": "llm"})), LLMRanker)
