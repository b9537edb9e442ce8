"""Tests for the paginated fetch runner."""

import pytest

from quizrec.catalog.paging import normalize_container_shape, run_paged

from conftest import FakeSource


class TestContainerShape:
    @pytest.mark.parametrize(
        "container, expected",
        [
            (None, []),
            ([1, 2], [1, 2]),
            ({"edges": [{"node": 1}, {"node": None}, {"node": 2}]}, [1, 2]),
            ({"items": [1]}, [1]),
            ({"results": {"edges": [{"node": 3}]}}, [3]),
            ({"products": [4]}, [4]),
            ({"unknown": [5]}, []),
        ],
    )
    def test_shapes(self, container, expected):
        assert normalize_container_shape(container) == expected


class TestRunPaged:
    async def test_single_page_without_next(self):
        source = FakeSource([[1, 2, 3]])
        outcome = await run_paged(source, page_cap=3, poll_interval=0.001)
        assert outcome.items == [1, 2, 3]
        assert outcome.pages == 1
        assert outcome.ok
        assert source.fetch_more_calls == 0

    async def test_page_cap_counts_first_page(self):
        source = FakeSource([[1], [2], [3], [4]])
        outcome = await run_paged(source, page_cap=3, poll_interval=0.001)
        assert outcome.items == [1, 2, 3]
        assert outcome.pages == 3
        assert source.fetch_more_calls == 2

    async def test_page_cap_one_never_fetches_more(self):
        source = FakeSource([[1], [2]])
        outcome = await run_paged(source, page_cap=1, poll_interval=0.001)
        assert outcome.items == [1]
        assert source.fetch_more_calls == 0

    async def test_error_returns_partial_results(self):
        source = FakeSource([[1, 2], [3]], fail_at=1)
        outcome = await run_paged(source, page_cap=5, poll_interval=0.001)
        assert outcome.items == [1, 2]
        assert not outcome.ok
        assert isinstance(outcome.error, RuntimeError)

    async def test_error_on_first_page(self):
        outcome = await run_paged(FakeSource([[1]], fail_at=0), page_cap=1, poll_interval=0.001)
        assert outcome.items == []
        assert outcome.error is not None

    async def test_stalled_source_times_out_empty(self):
        source = FakeSource([[1]], stall=True)
        outcome = await run_paged(source, page_cap=1, stall_timeout=0.05, poll_interval=0.005)
        assert outcome.timed_out
        assert outcome.items == []

    async def test_edges_pages_are_flattened(self):
        source = FakeSource([{"edges": [{"node": "a"}]}, {"edges": [{"node": "b"}]}])
        outcome = await run_paged(source, page_cap=2, poll_interval=0.001)
        assert outcome.items == ["a", "b"]

    async def test_fetch_more_raising_keeps_partial_items(self):
        class BrokenNextPage(FakeSource):
            async def fetch_more(self):
                self.fetch_more_calls += 1
                raise ConnectionError("cursor expired")

        source = BrokenNextPage([[{"id": "p1"}], [{"id": "p2"}]])
        outcome = await run_paged(source, page_cap=3, poll_interval=0.001)
        assert outcome.items == [{"id": "p1"}]
        assert outcome.pages == 1
        assert not outcome.ok
        assert isinstance(outcome.error, ConnectionError)
        assert source.fetch_more_calls == 1
