"""
Tests for vector similarity search: cosine, filters, decay, hybrid fusion.
"""

import math
import random

import pytest

from medctx.config import SearchSettings
from medctx.embedding_store import EmbeddingStore
from medctx.errors import DocumentNotFound
from medctx.similarity import (
    SimilaritySearch,
    cosine_similarity,
    decay_weight,
    extract_keywords,
    keyword_score,
)
from medctx.types import DateRange, SearchFilter, TimeDecay


@pytest.fixture
def store(make_record):
    store = EmbeddingStore()
    store.add(make_record("lab-new", [1.0, 0.0, 0.0], document_type="laboratory",
                          date="2024-01-29", tags=["blood"],
                          summary="Cholesterol panel with LDL and HDL"))
    store.add(make_record("lab-old", [0.9, 0.1, 0.0], document_type="laboratory",
                          date="2023-01-29", tags=["blood", "glucose"],
                          summary="Glucose tolerance test"))
    store.add(make_record("img", [0.0, 1.0, 0.0], document_type="imaging",
                          date="2024-01-20", tags=["chest"],
                          summary="Chest x-ray, clear lungs"))
    store.add(make_record("ecg", [0.6, 0.0, 0.8], document_type="cardiology",
                          date="2024-01-25", tags=["heart"],
                          summary="ECG normal sinus rhythm"))
    return store


@pytest.fixture
def search(store, now):
    return SimilaritySearch(store, now=now)


class TestCosine:

    def test_self_similarity_is_one(self):
        rng = random.Random(7)
        for _ in range(20):
            vec = [rng.uniform(-1, 1) for _ in range(12)]
            assert cosine_similarity(vec, vec) == pytest.approx(1.0)

    def test_symmetry(self):
        rng = random.Random(11)
        for _ in range(20):
            a = [rng.uniform(-1, 1) for _ in range(8)]
            b = [rng.uniform(-1, 1) for _ in range(8)]
            assert cosine_similarity(a, b) == cosine_similarity(b, a)

    def test_zero_vector_is_zero(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 2.0]) == 0.0

    def test_length_mismatch_is_zero(self):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0

    def test_empty_is_zero(self):
        assert cosine_similarity([], [1.0]) == 0.0
        assert cosine_similarity([], []) == 0.0

    def test_opposite_vectors(self):
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)


class TestDecay:

    def test_half_life_formula(self, now):
        decay = TimeDecay(half_life_days=30, min_weight=0.0)
        weight = decay_weight("2023-12-31T12:00:00Z", now(), decay)
        assert weight == pytest.approx(math.exp(-1))

    def test_floor(self, now):
        decay = TimeDecay(half_life_days=1, min_weight=0.1)
        assert decay_weight("2020-01-01", now(), decay) == 0.1

    def test_unparseable_date_takes_floor(self, now):
        decay = TimeDecay(min_weight=0.25)
        assert decay_weight("someday", now(), decay) == 0.25

    def test_future_date_boosts(self, now):
        decay = TimeDecay(half_life_days=30)
        assert decay_weight("2024-03-01", now(), decay) > 1.0


class TestSearch:

    def test_sorted_and_limited(self, search):
        results = search.search([1.0, 0.0, 0.0], max_results=2)
        assert len(results) == 2
        assert results[0].document_id == "lab-new"
        scores = [r.relevance_score for r in results]
        assert scores == sorted(scores, reverse=True)

    def test_threshold_uses_raw_similarity(self, search):
        results = search.search(
            [1.0, 0.0, 0.0], threshold=0.9,
            time_decay=TimeDecay(half_life_days=1, min_weight=0.01),
        )
        ids = {r.document_id for r in results}
        # lab-old is ~0.994 similar; decayed far below 0.9 but still kept
        assert ids == {"lab-new", "lab-old"}
        assert all(r.similarity >= 0.9 for r in results)
        assert any(r.relevance_score < 0.9 for r in results)

    def test_property_never_exceeds_limit_or_violates_threshold(self, make_record, now):
        rng = random.Random(3)
        store = EmbeddingStore()
        for i in range(40):
            store.add(make_record(f"d{i}", [rng.uniform(-1, 1) for _ in range(6)],
                                  date=f"2023-{rng.randint(1, 12):02d}-10"))
        search = SimilaritySearch(store, now=now)
        for _ in range(10):
            query = [rng.uniform(-1, 1) for _ in range(6)]
            threshold = rng.uniform(-0.5, 0.8)
            limit = rng.randint(1, 15)
            results = search.search(query, threshold=threshold, max_results=limit,
                                    time_decay=TimeDecay())
            assert len(results) <= limit
            assert all(r.similarity >= threshold for r in results)
            scores = [r.relevance_score for r in results]
            assert scores == sorted(scores, reverse=True)

    def test_decay_prefers_recent(self, search):
        results = search.search([1.0, 0.0, 0.0], time_decay=TimeDecay(half_life_days=30))
        assert results[0].document_id == "lab-new"
        old = next(r for r in results if r.document_id == "lab-old")
        assert old.relevance_score == pytest.approx(old.similarity * 0.1)

    def test_filters_or_within_and_across(self, search):
        filters = SearchFilter(document_types=("laboratory", "imaging"), tags=("glucose", "chest"))
        ids = {r.document_id for r in search.search([1.0, 1.0, 1.0], filters=filters)}
        assert ids == {"lab-old", "img"}

    def test_date_range_filter(self, search):
        filters = SearchFilter(date_range=DateRange("2024-01-01", "2024-01-25"))
        ids = {r.document_id for r in search.search([1.0, 1.0, 1.0], filters=filters)}
        assert ids == {"img", "ecg"}

    def test_excerpt_truncated_with_ellipsis(self, make_record, now):
        store = EmbeddingStore()
        store.add(make_record("long", summary="a" * 300))
        store.add(make_record("short", summary="brief"))
        search = SimilaritySearch(store, now=now)
        by_id = {r.document_id: r for r in search.search([1.0, 0.0, 0.0, 0.0])}
        assert by_id["long"].excerpt == "a" * 200 + "..."
        assert by_id["short"].excerpt == "brief"

    def test_empty_vector_scores_zero(self, make_record, now):
        store = EmbeddingStore()
        store.add(make_record("empty", vector=[]))
        store.add(make_record("ok", [1.0, 0.0, 0.0, 0.0]))
        results = SimilaritySearch(store, now=now).search([1.0, 0.0, 0.0, 0.0])
        assert [(r.document_id, r.similarity) for r in results] == [("ok", 1.0), ("empty", 0.0)]

    def test_empty_vector_respects_threshold(self, make_record, now):
        store = EmbeddingStore()
        store.add(make_record("empty", vector=[]))
        results = SimilaritySearch(store, now=now).search([1.0, 0.0], threshold=0.1)
        assert results == []


class TestHybrid:

    def test_keywords(self):
        assert extract_keywords("The LDL and HDL cholesterol of a patient") == [
            "ldl", "hdl", "cholesterol", "patient",
        ]

    def test_keyword_score(self):
        assert keyword_score("Cholesterol panel", ["cholesterol", "glucose"]) == 0.5
        assert keyword_score("anything", []) == 0.0

    def test_fusion_weights(self, search):
        results = search.hybrid_search("glucose tolerance", [1.0, 0.0, 0.0])
        old = next(r for r in results if r.document_id == "lab-old")
        assert old.keyword_score == 1.0
        assert old.relevance_score == pytest.approx(0.7 * old.similarity + 0.3)

    def test_keywords_can_reorder(self, search):
        plain = search.search([1.0, 0.0, 0.0])
        hybrid = search.hybrid_search("glucose tolerance test", [1.0, 0.0, 0.0])
        assert plain[0].document_id == "lab-new"
        assert hybrid[0].document_id == "lab-old"

    def test_custom_weights(self, store, now):
        search = SimilaritySearch(
            store, settings=SearchSettings(vector_weight=0.0, keyword_weight=1.0), now=now,
        )
        # max_results=2 pulls 4 vector candidates, i.e. the whole store
        results = search.hybrid_search("chest lungs", [1.0, 0.0, 0.0], max_results=2)
        assert results[0].document_id == "img"
        assert results[0].relevance_score == pytest.approx(1.0)


class TestFindSimilar:

    def test_excludes_source(self, search):
        results = search.find_similar_documents("lab-new")
        ids = [r.document_id for r in results]
        assert "lab-new" not in ids
        assert ids[0] == "lab-old"

    def test_missing_document_raises(self, search):
        with pytest.raises(DocumentNotFound):
            search.find_similar_documents("missing")
