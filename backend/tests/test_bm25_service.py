import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

"""
Tests for the BM25 lexical ranker.
"""

import math

import pytest
from hypothesis import given, strategies as st, settings

from kb_service.models.knowledge import DocEntry
from kb_service.retrieval.bm25_service import LengthNormalizedBM25, LexicalRanker


word = st.sampled_from(["feathers", "service", "hooks", "jwt", "channel", "schema", "query"])


class TestLengthNormalizedBM25:

    def test_idf_formula(self):
        model = LengthNormalizedBM25([["feathers", "service"], ["feathers", "hooks"]])
        # df(feathers) = 2, N = 2
        assert model.idf["feathers"] == pytest.approx(math.log(1 + 0.5 / 2.5))
        assert model.idf["service"] == pytest.approx(math.log(1 + 1.5 / 1.5))

    def test_idf_stays_positive_for_common_terms(self):
        model = LengthNormalizedBM25([["feathers"], ["feathers"], ["feathers", "hooks"]])
        assert model.idf["feathers"] > 0

    def test_unknown_terms_score_zero(self):
        model = LengthNormalizedBM25([["feathers", "service"], ["hooks"]])
        assert list(model.get_scores(["missing"])) == [0.0, 0.0]

    def test_single_term_score(self):
        k1, b = 1.5, 0.75
        model = LengthNormalizedBM25([["feathers", "service"], ["hooks"]], k1=k1, b=b)
        avgdl = 1.5
        idf = math.log(1 + 1.5 / 1.5)
        expected = idf * (1 * (k1 + 1)) / (1 + k1 * (1 - b + b * 2 / avgdl))
        assert model.get_scores(["service"])[0] == pytest.approx(expected)


class TestLexicalRanker:

    def test_scenario_a_above_b(self):
        ranker = LexicalRanker()
        ranker.index([
            ("a", ["feathers", "service", "create"]),
            ("b", ["feathers", "hooks"]),
        ])
        hits = ranker.search("feathers service")

        assert [h.id for h in hits] == ["a", "b"]
        assert hits[0].score == 1.0
        assert 0 < hits[1].score < 1.0

    def test_search_before_index_raises(self):
        with pytest.raises(RuntimeError):
            LexicalRanker().search("feathers")

    def test_empty_corpus(self):
        ranker = LexicalRanker()
        ranker.index([])
        assert ranker.is_indexed
        assert ranker.document_count == 0
        assert ranker.search("feathers") == []

    def test_no_matching_terms(self):
        ranker = LexicalRanker()
        ranker.index([("a", ["feathers"])])
        assert ranker.search("channel") == []
        assert ranker.search("the of and") == []

    def test_limit(self):
        ranker = LexicalRanker()
        ranker.index([(str(i), ["feathers", "service"]) for i in range(5)])
        assert len(ranker.search("feathers", limit=2)) == 2
        assert ranker.search("feathers", limit=0) == []

    def test_ties_keep_corpus_order(self):
        ranker = LexicalRanker()
        ranker.index([("x", ["hooks"]), ("y", ["hooks"]), ("z", ["hooks"])])
        hits = ranker.search("hooks")
        assert [h.id for h in hits] == ["x", "y", "z"]
        assert all(h.score == 1.0 for h in hits)

    def test_reindex_replaces(self):
        ranker = LexicalRanker()
        ranker.index([("old", ["feathers"])])
        ranker.index([("new", ["feathers"])])
        assert [h.id for h in ranker.search("feathers")] == ["new"]
        assert ranker.document_count == 1

    def test_clear(self):
        ranker = LexicalRanker()
        ranker.index([("a", ["feathers"])])
        ranker.clear()
        assert not ranker.is_indexed
        with pytest.raises(RuntimeError):
            ranker.search("feathers")

    def test_index_records_uses_lexical_tokens(self):
        records = [
            DocEntry.model_validate({
                "id": "tokens-list", "heading": "Ignored", "content": "ignored",
                "version": "v6", "tokens": ["channel", "realtime"],
            }),
            DocEntry.model_validate({
                "id": "derived", "heading": "Channels", "content": "Publishing realtime events",
                "version": "v6", "tokens": 42,
            }),
        ]
        ranker = LexicalRanker()
        ranker.index_records(records)

        assert [h.id for h in ranker.search("channel")] == ["tokens-list"]
        assert [h.id for h in ranker.search("publishing")] == ["derived"]

    @settings(max_examples=100)
    @given(
        st.lists(st.lists(word, min_size=1, max_size=8), min_size=1, max_size=12),
        st.lists(word, min_size=1, max_size=3),
    )
    def test_scores_bounded_and_sorted(self, corpus, query_words):
        ranker = LexicalRanker()
        ranker.index((str(i), tokens) for i, tokens in enumerate(corpus))
        hits = ranker.search(" ".join(query_words), limit=20)

        if hits:
            assert hits[0].score == 1.0
        for hit in hits:
            assert 0.0 <= hit.score <= 1.0
        scores = [h.score for h in hits]
        assert scores == sorted(scores, reverse=True)
