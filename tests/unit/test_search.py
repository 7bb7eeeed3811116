"""Hybrid search ranking tests over a small fixed corpus."""

from __future__ import annotations

import pytest

from mailbrief.index import IndexEngine, IndexEntryRepository, VectorIndex
from mailbrief.mailbox.normalize import item_to_message

E1 = [1.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0]
E2 = [0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0]
E3 = [0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 0.0]
NEAR_E1 = [0.8, 0.0, 0.0, 0.6, 0.0, 0.0, 0.0, 0.0]


@pytest.fixture
def corpus(settings, db_engine, store, pipeline_state, qdrant_client, fake_embedder, make_item):
    """Five messages; returns a factory for engines sharing the indexed data."""

    fake_embedder.fixed.update(
        {
            "quarterly report": E1,
            "Quarterly report": E1,
            "Financial summary": NEAR_E1,
            "Team lunch": E2,
            "Report card": E3,
        }
    )
    items = [
        make_item("q1", subject="Quarterly report", body="Numbers for Q3 attached", minutes=0),
        make_item("q2", subject="Quarterly report", body="Revised numbers", minutes=10),
        make_item("q3", subject="Team lunch", body="Pizza on Friday", minutes=5),
        make_item("q4", subject="Financial summary", body="Earnings overview for the quarter", minutes=3),
        make_item("q5", subject="Report card", body="School stuff", minutes=1),
    ]
    for item in items:
        store.put(item_to_message(item))

    entries = IndexEntryRepository(db_engine)
    vectors = VectorIndex(qdrant_client)

    def engine(**overrides) -> IndexEngine:
        return IndexEngine(
            store,
            entries,
            vectors,
            fake_embedder,
            pipeline_state,
            settings=settings.model_copy(update=overrides),
        )

    return engine


class TestHybridSearch:
    @pytest.mark.asyncio
    async def test_max_mode_ranking_and_recency_tie_break(self, corpus) -> None:
        engine = corpus()
        await engine.run_pass()

        ids = await engine.search("quarterly report", k=10)

        # q1 and q2 tie on score; q2 was received later and ranks first.
        # q4 has no shared terms but a close vector; q3 matches nothing.
        assert ids == ["q2", "q1", "q4", "q5"]

    @pytest.mark.asyncio
    async def test_k_limits_results(self, corpus) -> None:
        engine = corpus()
        await engine.run_pass()

        assert await engine.search("quarterly report", k=2) == ["q2", "q1"]

    @pytest.mark.asyncio
    async def test_hit_scores(self, corpus) -> None:
        engine = corpus()
        await engine.run_pass()

        hits = {h.provider_id: h for h in await engine.search_hits("quarterly report", k=10)}

        assert hits["q1"].lexical_score == 1.0
        assert hits["q1"].vector_score == 1.0
        assert hits["q4"].lexical_score == 0.0
        assert hits["q4"].vector_score == pytest.approx(0.8)
        assert hits["q5"].lexical_score == 0.5
        assert hits["q5"].score == 0.5

    @pytest.mark.asyncio
    async def test_weighted_mode_favours_lexical_matches(self, corpus) -> None:
        engine = corpus(search_mode="weighted", search_lexical_weight=0.9)
        await engine.run_pass()

        ids = await engine.search("quarterly report", k=10)

        assert ids == ["q2", "q1", "q5", "q4"]

    @pytest.mark.asyncio
    async def test_lexical_only_when_query_embedding_fails(self, corpus, fake_embedder) -> None:
        engine = corpus()
        await engine.run_pass()
        fake_embedder.fail_all = True

        ids = await engine.search("quarterly report", k=10)

        assert ids == ["q2", "q1", "q5"]

    @pytest.mark.asyncio
    async def test_repeated_queries_are_deterministic(self, corpus) -> None:
        engine = corpus()
        await engine.run_pass()

        first = await engine.search("quarterly report", k=10)
        second = await engine.search("quarterly report", k=10)

        assert first == second

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query,k", [("", 5), ("   ", 5), ("quarterly report", 0)])
    async def test_empty_query_or_k(self, corpus, query: str, k: int) -> None:
        engine = corpus()
        await engine.run_pass()

        assert await engine.search(query, k=k) == []

    @pytest.mark.asyncio
    async def test_search_before_anything_is_indexed(self, corpus) -> None:
        assert await corpus().search("quarterly report", k=5) == []

    @pytest.mark.asyncio
    async def test_top_three_for_quarterly_report(self, corpus) -> None:
        engine = corpus()
        await engine.run_pass()

        assert await engine.search("quarterly report", k=3) == ["q2", "q1", "q4"]


class TestTiesBeyondCandidateWindow:
    """More equally scored messages than the candidate window holds."""

    @pytest.fixture
    def tied_engine(self, settings, db_engine, store, pipeline_state, qdrant_client, fake_embedder, make_item):
        # Listed newest first, as a mailbox bootstrap delivers them: m0 is the
        # most recent message but gets the lowest sequence.
        for i in range(20):
            store.put(
                item_to_message(make_item(f"m{i}", subject="Quarterly report", body=f"Notes {i}", minutes=-i))
            )
        return IndexEngine(
            store,
            IndexEntryRepository(db_engine),
            VectorIndex(qdrant_client),
            fake_embedder,
            pipeline_state,
            settings=settings,
        )

    @pytest.mark.asyncio
    async def test_lexical_ties_keep_the_most_recent_messages(self, tied_engine, fake_embedder) -> None:
        await tied_engine.run_pass()
        fake_embedder.fail_all = True

        assert await tied_engine.search("quarterly report", k=3) == ["m0", "m1", "m2"]

    @pytest.mark.asyncio
    async def test_ties_with_a_single_candidate_per_result(self, tied_engine, fake_embedder, settings) -> None:
        await tied_engine.run_pass()
        fake_embedder.fail_all = True
        tied_engine.settings = settings.model_copy(update={"search_candidate_multiplier": 1})

        assert await tied_engine.search("quarterly report", k=5) == ["m0", "m1", "m2", "m3", "m4"]
