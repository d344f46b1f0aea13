"""Tests for retrieval utilities."""

from privacy_vault.retrieval import SearchResult, VectorIndex, diversify


def test_vector_index_basic() -> None:
    index = VectorIndex(dim=3)
    index.upsert("doc-1", ["a", "b"], [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]], model="m")
    results = index.search([1.0, 0.0, 0.0], top_k=1)
    assert results
    assert results[0].chunk_id == "a"
    assert results[0].document_id == "doc-1"


def test_vector_index_remove_document() -> None:
    index = VectorIndex(dim=2)
    index.upsert("doc-1", ["a"], [[1.0, 0.0]], model="m")
    index.upsert("doc-2", ["b"], [[0.0, 1.0]], model="m")
    assert index.remove_document("doc-1") == 1
    assert not index.contains_document("doc-1")
    assert [result.chunk_id for result in index.search([1.0, 0.0], top_k=5)] == ["b"]


def test_vector_index_keeps_models_apart() -> None:
    index = VectorIndex(dim=2)
    index.upsert("doc-1", ["local"], [[1.0, 0.0]], model="local")
    index.upsert("doc-2", ["remote"], [[1.0, 0.0]], model="remote:x")
    assert [result.chunk_id for result in index.search([1.0, 0.0], model="local")] == ["local"]


def test_diversify_caps_per_document_and_applies_floor() -> None:
    ranked = [
        SearchResult("a1", "a", 0.99),
        SearchResult("a2", "a", 0.98),
        SearchResult("a3", "a", 0.97),
        SearchResult("b1", "b", 0.9),
        SearchResult("c1", "c", 0.5),
    ]
    picked = diversify(ranked, k=5, min_similarity=0.7, max_per_document=2)
    assert [result.chunk_id for result in picked] == ["a1", "a2", "b1"]


def test_diversify_respects_k() -> None:
    ranked = [SearchResult(f"c{i}", f"d{i}", 0.9) for i in range(5)]
    assert len(diversify(ranked, k=3, min_similarity=0.0, max_per_document=2)) == 3
