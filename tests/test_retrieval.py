import threading
from collections import OrderedDict

import numpy as np
import pytest

import rag_core
from rag_core import DocumentStore, SearchCandidate, hybrid_search, answer_question
from mock_db import DOCUMENTS

BIO = "bio-week1.pdf"


def test_processing_records_sections_and_pages(store):
    status = store.get_status(BIO)
    assert status["status"] == "completed"
    assert status["totalSections"] == status["processedSections"] == 3
    sections = store.bm25.doc_sections[BIO]
    assert [s.section_number for s in sections] == [1, 2, 3]
    assert [s.page for s in sections] == [1, 1, 2]
    assert store.has_document(BIO)


def test_completed_document_is_not_reprocessed(store, monkeypatch):
    def boom(*args, **kwargs):
        raise AssertionError("should not re-embed")
    monkeypatch.setattr(store.vectors, "add_document", boom)
    assert store.process_document(BIO, "anything")["status"] == "completed"


def test_empty_document_marks_error(embed):
    s = DocumentStore()
    with pytest.raises(ValueError, match="No valid sections"):
        s.process_document("empty.pdf", "too short")
    status = s.get_status("empty.pdf")
    assert status["status"] == "error"
    assert "No valid sections" in status["error"]
    assert not s.has_document("empty.pdf")


def test_embedding_failure_marks_error(monkeypatch):
    def broken(text):
        raise RuntimeError("Embedding error: quota")
    monkeypatch.setattr(rag_core, "embed_text", broken)
    s = DocumentStore()
    with pytest.raises(RuntimeError):
        s.process_document(BIO, DOCUMENTS[BIO])
    assert s.get_status(BIO)["status"] == "error"


def test_concurrent_process_embeds_once(embed, monkeypatch):
    started, release = threading.Event(), threading.Event()
    embedded = []

    def slow_embed(text):
        embedded.append(text)
        started.set()
        release.wait(5)
        return embed(text)

    monkeypatch.setattr(rag_core, "embed_text", slow_embed)
    s = DocumentStore()
    worker = threading.Thread(target=s.process_document, args=(BIO, DOCUMENTS[BIO]))
    worker.start()
    assert started.wait(5)

    second = s.process_document(BIO, DOCUMENTS[BIO])
    assert second["status"] == "processing"

    release.set()
    worker.join(5)
    assert s.get_status(BIO)["status"] == "completed"
    assert len(embedded) == 3


def test_failed_document_can_be_reprocessed(embed):
    s = DocumentStore()
    with pytest.raises(ValueError):
        s.process_document(BIO, "too short")
    assert s.process_document(BIO, DOCUMENTS[BIO])["status"] == "completed"


def test_unknown_document_status_is_pending():
    status = DocumentStore().get_status("nope.pdf")
    assert status["status"] == "pending"
    assert status["totalSections"] == 0
    assert status["processedSections"] == 0


def test_keyword_search_only_returns_matching_sections(store):
    hits = store.bm25.search(BIO, "mitochondria ATP", 5)
    assert len(hits) == 1
    assert hits[0].content.startswith("Chapter 2")
    assert hits[0].metadata == {"sectionNumber": 2, "page": 1, "source": "keyword"}
    assert store.bm25.search(BIO, "quantum entanglement", 5) == []
    assert store.bm25.search("missing.pdf", "mitochondria", 5) == []


def test_vector_search_is_scoped_and_ranked(store, embed):
    hits = store.vectors.search(BIO, embed("Cell walls provide structure"), 2)
    assert len(hits) == 2
    assert hits[0].content.startswith("Cell walls provide structure")
    assert hits[0].metadata["page"] == 2
    assert hits[0].metadata["source"] == "vector"
    assert hits[0].score >= hits[1].score
    assert all("projectile" not in h.content for h in hits)
    assert store.vectors.search("missing.pdf", embed("x"), 2) == []


def test_hybrid_search_merges_both_sources(store):
    results = hybrid_search(store, BIO, "mitochondria ATP", k=2)
    assert len(results) == 2
    assert results[0].content.startswith("Chapter 2")
    # shared passage keeps the vector (cosine) score
    assert results[0].metadata["source"] == "vector"
    assert len({r.content for r in results}) == len(results)


def test_hybrid_search_degrades_to_keyword_results(store, monkeypatch):
    def down(*args, **kwargs):
        raise ConnectionError("vector index unavailable")
    monkeypatch.setattr(store.vectors, "search", down)
    results = hybrid_search(store, BIO, "mitochondria ATP", k=3, strict=False)
    assert [r.metadata["source"] for r in results] == ["keyword"]

    with pytest.raises(ConnectionError):
        hybrid_search(store, BIO, "mitochondria ATP", k=3, strict=True)

    monkeypatch.setattr(store.bm25, "search", down)
    with pytest.raises(ConnectionError):
        hybrid_search(store, BIO, "mitochondria ATP", k=3, strict=False)


def test_answer_question_uses_context_and_caches(store, gemini):
    first = answer_question(store, BIO, "What produces ATP?")
    assert first["response"].startswith("answer from")
    assert first["cached"] is False
    assert first["sources"]
    assert len(gemini.prompts) == 1
    assert "Question: What produces ATP?" in gemini.prompts[0]
    assert "Mitochondria produce ATP" in gemini.prompts[0]

    second = answer_question(store, BIO, "What produces ATP?")
    assert second["cached"] is True
    assert second["response"] == first["response"]
    assert len(gemini.prompts) == 1


def test_answer_question_unknown_document(store, gemini):
    with pytest.raises(LookupError):
        answer_question(store, "missing.pdf", "hello?")


def test_answer_question_without_context(store, gemini, monkeypatch):
    monkeypatch.setattr(rag_core, "hybrid_search", lambda *args, **kwargs: [])
    result = answer_question(store, BIO, "Who won the match?")
    assert result["response"] == rag_core.NO_CONTEXT_REPLY
    assert gemini.prompts == []


def test_generate_text_falls_back_to_next_model(monkeypatch):
    tried = []

    class Flaky:
        def __init__(self, name, generation_config=None):
            tried.append(name)
            self.name = name

        def generate_content(self, prompt):
            if self.name != "gemini-1.5-pro":
                raise RuntimeError("404 model not found")

            class _Resp:
                text = "ok"
            return _Resp()

    monkeypatch.setattr(rag_core, "GENERATION_MODEL", "gemini-old")
    monkeypatch.setattr(rag_core.genai, "GenerativeModel", Flaky)
    assert rag_core.generate_text("hi") == "ok"
    assert tried[0] == "gemini-old"
    assert tried[-1] == "gemini-1.5-pro"


def test_generate_text_reports_all_models_on_failure(monkeypatch):
    class Down:
        def __init__(self, name, generation_config=None):
            pass

        def generate_content(self, prompt):
            raise RuntimeError("offline")

    monkeypatch.setattr(rag_core.genai, "GenerativeModel", Down)
    with pytest.raises(RuntimeError, match="Tried models"):
        rag_core.generate_text("hi")


def test_format_context_joins_in_rank_order_and_caps():
    cands = [SearchCandidate("first", 0.9), SearchCandidate("second", 0.5)]
    assert rag_core.format_context(cands) == "first\nsecond"
    long = [SearchCandidate("x" * 2000, 0.9), SearchCandidate("y" * 2000, 0.5)]
    assert len(rag_core.format_context(long)) == rag_core.MAX_CONTEXT_CHARS


def test_embed_text_normalises_and_caches(monkeypatch):
    calls = []

    def fake_embed_content(model, content):
        calls.append(content)
        return {"embedding": [3.0, 4.0]}

    monkeypatch.setattr(rag_core, "_EMBEDDING_CACHE", OrderedDict())
    monkeypatch.setattr(rag_core.genai, "embed_content", fake_embed_content)
    vec = rag_core.embed_text("hello")
    assert np.allclose(vec, [0.6, 0.8], atol=1e-6)
    rag_core.embed_text("hello")
    assert calls == ["hello"]


def test_embed_text_wraps_errors(monkeypatch):
    def fail(model, content):
        raise ValueError("API key not valid")

    monkeypatch.setattr(rag_core, "_EMBEDDING_CACHE", OrderedDict())
    monkeypatch.setattr(rag_core.genai, "embed_content", fail)
    with pytest.raises(RuntimeError, match="GEMINI_API_KEY"):
        rag_core.embed_text("hello")


def test_embedding_cache_evicts_least_recently_used(monkeypatch):
    calls = []

    def fake_embed_content(model, content):
        calls.append(content)
        return {"embedding": [1.0, 0.0]}

    monkeypatch.setattr(rag_core, "_EMBEDDING_CACHE", OrderedDict())
    monkeypatch.setattr(rag_core, "EMBEDDING_CACHE_SIZE", 2)
    monkeypatch.setattr(rag_core.genai, "embed_content", fake_embed_content)
    for text in ("a", "b", "a", "c"):
        rag_core.embed_text(text)
    assert list(rag_core._EMBEDDING_CACHE) == ["a", "c"]
    rag_core.embed_text("b")
    assert calls == ["a", "b", "c", "b"]


def test_response_cache_is_capped(store, gemini, monkeypatch):
    monkeypatch.setattr(rag_core, "RESPONSE_CACHE_SIZE", 1)
    answer_question(store, BIO, "What produces ATP?")
    answer_question(store, BIO, "What do cell walls do?")
    assert list(store.response_cache) == [f"{BIO}:What do cell walls do?"]
    assert answer_question(store, BIO, "What produces ATP?")["cached"] is False


class FakeResponse:
    def __init__(self, status_code, text):
        self.status_code = status_code
        self.text = text


def test_fetch_document_text(monkeypatch):
    seen = {}

    def fake_get(url, timeout):
        seen["url"], seen["timeout"] = url, timeout
        return FakeResponse(200, "Chapter 1 Cells\nCells are the basic unit of life.")

    monkeypatch.setattr(rag_core.requests, "get", fake_get)
    assert rag_core.fetch_document_text("http://files/notes.txt").startswith("Chapter 1")
    assert seen == {"url": "http://files/notes.txt", "timeout": rag_core.HTTP_TIMEOUT}


def test_fetch_document_text_error(monkeypatch):
    monkeypatch.setattr(rag_core.requests, "get", lambda url, timeout: FakeResponse(404, "not here"))
    with pytest.raises(RuntimeError, match="404"):
        rag_core.fetch_document_text("http://files/missing.txt")
