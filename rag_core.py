# rag_core.py — document RAG for StudySpark (Gemini embeddings + BM25, hybrid merge)
import os, re, math, time, numbers, threading
from dataclasses import dataclass, field, replace
from typing import List, Dict, Any, Optional, Sequence, Callable
from collections import defaultdict, OrderedDict

import numpy as np
import requests
from rank_bm25 import BM25Okapi
import google.generativeai as genai

# -------------------------
# Env & model configuration
# -------------------------
EMBEDDING_MODEL  = os.getenv("EMBEDDING_MODEL", "models/text-embedding-004")
GENERATION_MODEL = os.getenv("GENERATION_MODEL", "gemini-1.5-flash")
FALLBACK_MODELS  = ("gemini-1.5-flash", "gemini-1.5-flash-8b", "gemini-1.5-pro")

MERGE_POLICY        = os.getenv("MERGE_POLICY", "vector_priority")
SCORE_NORMALIZATION = os.getenv("SCORE_NORMALIZATION", "none")
SEARCH_TOP_K        = int(os.getenv("SEARCH_TOP_K", "5"))
STRICT_RETRIEVAL    = os.getenv("STRICT_RETRIEVAL", "0") == "1"
HTTP_TIMEOUT        = float(os.getenv("HTTP_TIMEOUT", "10"))
EMBEDDING_CACHE_SIZE = int(os.getenv("EMBEDDING_CACHE_SIZE", "2048"))
RESPONSE_CACHE_SIZE  = int(os.getenv("RESPONSE_CACHE_SIZE", "256"))

MAX_CONTEXT_CHARS = 3000
GENERATION_CONFIG = {"temperature": 0.3, "top_p": 0.8, "max_output_tokens": 500}
NO_CONTEXT_REPLY  = "I couldn't find relevant information. Please rephrase your question."

API_KEY = os.getenv("GEMINI_API_KEY", "")
genai.configure(api_key=API_KEY)


# -------------------------
# Data model
# -------------------------
@dataclass
class SearchCandidate:
    content: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


class InvalidCandidate(ValueError):
    """Raised when a candidate has empty content or a non-finite score."""

    def __init__(self, candidate: Any, source: str, position: int, reason: str):
        self.candidate = candidate
        self.source = source
        self.position = position
        super().__init__(f"Invalid {source} candidate at position {position}: {reason}")


def _validate(candidates: Sequence[SearchCandidate], source: str) -> None:
    for pos, c in enumerate(candidates):
        content = getattr(c, "content", None)
        if not isinstance(content, str) or not content.strip():
            raise InvalidCandidate(c, source, pos, "empty content")
        score = getattr(c, "score", None)
        # numeric strings and bools are rejected too: they would break the sort
        if isinstance(score, bool) or not isinstance(score, numbers.Real):
            raise InvalidCandidate(c, source, pos, f"score {score!r} is not a number")
        if not math.isfinite(score):
            raise InvalidCandidate(c, source, pos, f"score {score} is not finite")


# -------------------------
# Score normalization strategies
# -------------------------
def _no_normalization(candidates: List[SearchCandidate]) -> List[SearchCandidate]:
    return list(candidates)

def _minmax_normalization(candidates: List[SearchCandidate]) -> List[SearchCandidate]:
    if not candidates:
        return []
    scores = [float(c.score) for c in candidates]
    lo, hi = min(scores), max(scores)
    if hi == lo:
        return [replace(c, score=1.0) for c in candidates]
    return [replace(c, score=(float(c.score) - lo) / (hi - lo)) for c in candidates]

def _rank_normalization(candidates: List[SearchCandidate]) -> List[SearchCandidate]:
    # rank 0 is the best-scored candidate of this source; ties keep input order
    order = sorted(range(len(candidates)), key=lambda i: candidates[i].score, reverse=True)
    rank = {idx: r for r, idx in enumerate(order)}
    return [replace(c, score=1.0 / (1 + rank[i])) for i, c in enumerate(candidates)]

NORMALIZERS: Dict[str, Callable[[List[SearchCandidate]], List[SearchCandidate]]] = {
    "none": _no_normalization,
    "minmax": _minmax_normalization,
    "rank": _rank_normalization,
}


# -------------------------
# Duplicate-content policies
# -------------------------
def _keep_first_seen(seen: SearchCandidate, new: SearchCandidate) -> SearchCandidate:
    return seen

def _keep_max_score(seen: SearchCandidate, new: SearchCandidate) -> SearchCandidate:
    return new if new.score > seen.score else seen

MERGE_POLICIES: Dict[str, Callable[[SearchCandidate, SearchCandidate], SearchCandidate]] = {
    "vector_priority": _keep_first_seen,
    "max_score": _keep_max_score,
}


# -------------------------
# Hybrid merge
# -------------------------
def hybrid_merge(vector_results: Sequence[SearchCandidate],
                 keyword_results: Sequence[SearchCandidate],
                 limit: Optional[int] = None,
                 policy: str = "vector_priority",
                 normalization: str = "none") -> List[SearchCandidate]:
    """
    [R] Merges vector and keyword candidates into one ranked, de-duplicated list.
    Why: Grounding context needs a single ordering over both retrieval sources.
    Used in: hybrid_search, before prompt construction.

    Candidates are keyed by exact content. Vector results are scanned first, so
    with the default "vector_priority" policy a passage found by both sources
    keeps its vector score; "max_score" keeps the higher one instead. The result
    is stably sorted by score (descending) and cut to `limit` when given.
    Malformed candidates raise InvalidCandidate instead of being dropped.
    """
    if policy not in MERGE_POLICIES:
        raise ValueError(f"Unknown merge policy: {policy!r}. Expected one of {sorted(MERGE_POLICIES)}")
    if normalization not in NORMALIZERS:
        raise ValueError(f"Unknown score normalization: {normalization!r}. Expected one of {sorted(NORMALIZERS)}")
    if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 1):
        raise ValueError(f"limit must be a positive integer, got {limit!r}")

    _validate(vector_results, "vector")
    _validate(keyword_results, "keyword")

    normalize = NORMALIZERS[normalization]
    keep = MERGE_POLICIES[policy]

    merged: Dict[str, SearchCandidate] = {}
    for cand in normalize(list(vector_results)) + normalize(list(keyword_results)):
        seen = merged.get(cand.content)
        # reassigning an existing key keeps its first-seen position
        merged[cand.content] = cand if seen is None else keep(seen, cand)

    ranked = sorted(merged.values(), key=lambda c: c.score, reverse=True)
    return ranked[:limit] if limit is not None else ranked


# -------------------------
# Sectioning
# -------------------------
SECTION_MARKER = re.compile(r"(?=(?:Chapter|Section)\s+\w+|\d+\.\s+[A-Z])")
PARAGRAPH_BREAK = re.compile(r"\n\s*\n")
SENTENCE = re.compile(r"[^.!?]+(?:[.!?]+|$)")

def split_into_sections(text: str, max_length: int = 1000, min_length: int = 50) -> List[str]:
    """
    [R] Splits document text into retrieval sections.
    Why: Sections are the unit that gets embedded, BM25-indexed and returned as context.
    Used in: DocumentStore.process_document.
    """
    sections = [s for s in SECTION_MARKER.split(text) if s.strip()]
    if len(sections) <= 1:
        sections = PARAGRAPH_BREAK.split(text)

    result: List[str] = []
    for section in sections:
        section = section.strip()
        if not section:
            continue
        if len(section) <= max_length:
            result.append(section)
            continue

        current = ""
        for sentence in SENTENCE.findall(section):
            sentence = sentence.strip()
            if not sentence:
                continue
            if current and len(current) + 1 + len(sentence) > max_length:
                result.append(current)
                current = sentence
            else:
                current = f"{current} {sentence}" if current else sentence
        if current:
            result.append(current)

    return [s for s in result if len(s) >= min_length]


def tokenize(text: str) -> List[str]:
    """
    [R] Lowercase alphanumeric tokens for lexical search.
    """
    return re.findall(r"[A-Za-z0-9_]+", text.lower())


def clean_document_id(value: str) -> str:
    # "/uploads/notes.pdf" (path or full URL) -> "notes.pdf"
    match = re.search(r"/uploads/(.+)$", value or "")
    return match.group(1) if match else value


@dataclass
class DocSection:
    document_id: str
    section_number: int
    page: Optional[int]
    text: str

    def to_candidate(self, score: float, source: str) -> SearchCandidate:
        return SearchCandidate(self.text, float(score), {
            "sectionNumber": self.section_number,
            "page": self.page,
            "source": source,
        })


# -------------------------
# Gemini embeddings
# -------------------------
_EMBEDDING_CACHE: "OrderedDict[str, np.ndarray]" = OrderedDict()

def _cache_get(cache: OrderedDict, key: str):
    value = cache.get(key)
    if value is not None:
        cache.move_to_end(key)
    return value

def _cache_put(cache: OrderedDict, key: str, value: Any, maxsize: int) -> None:
    # least recently used entries go first
    cache[key] = value
    cache.move_to_end(key)
    while len(cache) > maxsize:
        cache.popitem(last=False)


def embed_text(text: str) -> np.ndarray:
    """
    [R] Embeds one text with Gemini and L2-normalises it. Cached per text.
    """
    cached = _cache_get(_EMBEDDING_CACHE, text)
    if cached is not None:
        return cached
    try:
        e = genai.embed_content(model=EMBEDDING_MODEL, content=text)
    except Exception as exc:
        raise RuntimeError(f"Embedding error: {exc}. "
                           f"Check GEMINI_API_KEY and EMBEDDING_MODEL='{EMBEDDING_MODEL}'.") from exc
    vec = np.asarray(e["embedding"], dtype="float32")
    vec = vec / (np.linalg.norm(vec) + 1e-12)
    _cache_put(_EMBEDDING_CACHE, text, vec, EMBEDDING_CACHE_SIZE)
    return vec


# -------------------------
# BM25 per-document (lexical)
# -------------------------
class DocumentBM25:
    """
    [R] BM25 keyword index, one per document.
    Why: Catches exact terms (names, formulas, jargon) that embeddings blur.
    """
    def __init__(self):
        self.doc_sections: Dict[str, List[DocSection]] = {}
        self.doc_tokens: Dict[str, List[set]] = {}
        self.doc_bm25: Dict[str, BM25Okapi] = {}

    def add_document(self, document_id: str, sections: List[DocSection]):
        tokenized = [tokenize(s.text) for s in sections]
        self.doc_sections[document_id] = list(sections)
        self.doc_tokens[document_id] = [set(t) for t in tokenized]
        self.doc_bm25[document_id] = BM25Okapi(tokenized)

    def search(self, document_id: str, query: str, k: int) -> List[SearchCandidate]:
        """
        [R] Top-k sections of one document by BM25 score.
        Sections sharing no token with the query are never returned.
        """
        if document_id not in self.doc_bm25:
            return []
        q_tokens = tokenize(query)
        if not q_tokens:
            return []
        scores = self.doc_bm25[document_id].get_scores(q_tokens)
        wanted = set(q_tokens)
        hits = [i for i, toks in enumerate(self.doc_tokens[document_id]) if toks & wanted]
        hits.sort(key=lambda i: scores[i], reverse=True)
        sections = self.doc_sections[document_id]
        return [sections[i].to_candidate(scores[i], "keyword") for i in hits[:k]]


# -------------------------
# NumPy vector index (Gemini embeddings)
# -------------------------
class DocumentVectorIndex:
    """
    [R] Dense vector store for document sections using Gemini embeddings.
    Why: Similarity-based retrieval to complement BM25.
    """
    def __init__(self):
        self.doc_sections: Dict[str, List[DocSection]] = {}
        self.doc_matrix: Dict[str, np.ndarray] = {}  # normalized rows

    def _embed_batch(self, texts: List[str]) -> np.ndarray:
        X = np.vstack([embed_text(t) for t in texts]).astype("float32")
        X /= (np.linalg.norm(X, axis=1, keepdims=True) + 1e-12)
        return X

    def add_document(self, document_id: str, sections: List[DocSection],
                     on_progress: Optional[Callable[[int], None]] = None):
        """
        [R] Embeds all sections of a document, replacing any previous data for it.
        """
        rows = []
        for done, s in enumerate(sections, start=1):
            rows.append(self._embed_batch([s.text])[0])
            if on_progress:
                on_progress(done)
        self.doc_sections[document_id] = list(sections)
        self.doc_matrix[document_id] = np.vstack(rows) if rows else np.zeros((0, 1), dtype="float32")

    def search(self, document_id: str, query_embedding: np.ndarray, k: int) -> List[SearchCandidate]:
        if document_id not in self.doc_matrix or not self.doc_sections[document_id]:
            return []
        q = np.asarray(query_embedding, dtype="float32").reshape(-1)
        q = q / (np.linalg.norm(q) + 1e-12)
        sims = self.doc_matrix[document_id] @ q
        idx = np.argsort(-sims, kind="stable")[:k]
        sections = self.doc_sections[document_id]
        return [sections[i].to_candidate(sims[i], "vector") for i in idx]


# -------------------------
# Document store & processing status
# -------------------------
class DocumentStore:
    """
    [R] Holds both retrieval indices plus per-document processing status.
    Why: One place the HTTP layer can process, query and poll documents.
    """
    def __init__(self):
        self.bm25 = DocumentBM25()
        self.vectors = DocumentVectorIndex()
        self.status: Dict[str, Dict[str, Any]] = {}
        self.response_cache: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self._lock = threading.Lock()

    def has_document(self, document_id: str) -> bool:
        return self.status.get(document_id, {}).get("status") == "completed"

    def update_status(self, document_id: str, status: str, total: int, processed: int,
                      error: Optional[str] = None) -> Dict[str, Any]:
        record = {
            "documentId": document_id,
            "status": status,
            "totalSections": total,
            "processedSections": processed,
            "error": error,
            "updatedAt": time.time(),
        }
        self.status[document_id] = record
        return record

    def get_status(self, document_id: str) -> Dict[str, Any]:
        if document_id in self.status:
            return dict(self.status[document_id])
        return {"documentId": document_id, "status": "pending", "totalSections": 0,
                "processedSections": 0, "error": None, "updatedAt": time.time()}

    def process_document(self, document_id: str, content: str) -> Dict[str, Any]:
        """
        [R] Splits, embeds and BM25-indexes a document, tracking progress.
        Why: Search and chat only work over documents that completed processing.
        Used in: POST /process.

        Pages are separated by form feeds (as PDF text extractors emit them);
        each section remembers the page it came from. The status check and the
        claim happen under one lock, so concurrent calls process a document once;
        a stored "pending" record means another call has already claimed it.
        """
        with self._lock:
            existing = self.status.get(document_id)
            if existing and existing["status"] in ("completed", "processing", "pending"):
                print(f"ℹ️ Document {document_id} already {existing['status']}")
                return dict(existing)
            self.update_status(document_id, "pending", 0, 0)

        try:
            sections: List[DocSection] = []
            for page_no, page in enumerate(content.split("\f"), start=1):
                for text in split_into_sections(page):
                    sections.append(DocSection(document_id, len(sections) + 1, page_no, text))
            if not sections:
                raise ValueError("No valid sections found in document")

            total = len(sections)
            print(f"⚙️ Processing {total} sections for {document_id}...")
            self.update_status(document_id, "processing", total, 0)
            self.vectors.add_document(
                document_id, sections,
                on_progress=lambda n: self.update_status(document_id, "processing", total, n))
            self.bm25.add_document(document_id, sections)
            print(f"✅ Document {document_id} processed")
            return self.update_status(document_id, "completed", total, total)
        except Exception as exc:
            self.update_status(document_id, "error", 0, 0, str(exc))
            raise


# -------------------------
# Hybrid retrieval
# -------------------------
def hybrid_search(store: DocumentStore, document_id: str, query: str,
                  k: int = SEARCH_TOP_K, strict: bool = STRICT_RETRIEVAL) -> List[SearchCandidate]:
    """
    [R] Runs vector and keyword search over one document and merges the results.
    Why: Hybrid strategy maximizes recall and relevance for each query.
    Used in: POST /search and answer_question.

    In degraded mode (strict=False) a failing source contributes no candidates;
    if both fail, the last error propagates.
    """
    results: Dict[str, List[SearchCandidate]] = defaultdict(list)
    errors: Dict[str, Exception] = {}

    try:
        results["vector"] = store.vectors.search(document_id, embed_text(query), k)
    except Exception as exc:
        if strict:
            raise
        print(f"⚠️ Vector search failed for {document_id}: {exc}")
        errors["vector"] = exc

    try:
        results["keyword"] = store.bm25.search(document_id, query, k)
    except Exception as exc:
        if strict:
            raise
        print(f"⚠️ Keyword search failed for {document_id}: {exc}")
        errors["keyword"] = exc

    if len(errors) == 2:
        raise errors["keyword"]

    return hybrid_merge(results["vector"], results["keyword"], limit=k,
                        policy=MERGE_POLICY, normalization=SCORE_NORMALIZATION)


# -------------------------
# Prompting
# -------------------------
FORMAT_RULES = """Format your response using these rules:
- Use **bold** for important terms, names, and key points
- Start each main point with a clear heading in **bold**
- Use proper indentation and bullet points for lists
- Add a single line break between sections
- Format lists and enumerations clearly with bullet points (*)
- Keep paragraphs concise and well-structured
- Use markdown formatting for better readability
- Avoid excessive line breaks or spaces
- If listing items, use consistent formatting throughout
- If mentioning dates, addresses, or numbers, make them **bold**

Provide a clear, well-structured response that is easy to read."""

def format_context(candidates: List[SearchCandidate], max_chars: int = MAX_CONTEXT_CHARS) -> str:
    """
    [A] Joins ranked passages into one context block, capped at max_chars.
    """
    return "\n".join(c.content for c in candidates)[:max_chars]

def build_chat_prompt(question: str, candidates: List[SearchCandidate]) -> str:
    return f"""Answer based on this context:
{format_context(candidates)}

Question: {question}

{FORMAT_RULES}"""


# -------------------------
# Generation
# -------------------------
def generate_text(prompt: str) -> str:
    """
    [G] Calls Gemini, trying the configured model first and then the fallbacks.
    """
    candidate_models = []
    for name in (GENERATION_MODEL,) + FALLBACK_MODELS:
        if name and name not in candidate_models:
            candidate_models.append(name)

    last_error = None
    for model_name in candidate_models:
        try:
            model = genai.GenerativeModel(model_name, generation_config=GENERATION_CONFIG)
            return model.generate_content(prompt).text
        except Exception as exc:
            print(f"⚠️ Model {model_name} failed: {exc}")
            last_error = exc

    raise RuntimeError(f"Generation error: {last_error}. Tried models: {', '.join(candidate_models)}")


def answer_question(store: DocumentStore, document_id: str, message: str) -> Dict[str, Any]:
    """
    [R, A, G] Retrieves grounding passages, builds the prompt and generates an answer.
    Why: Main entry point of the document chat.
    Used in: POST /rag_chat.
    """
    if not store.has_document(document_id):
        raise LookupError(f"Document not found: {document_id}")

    cache_key = f"{document_id}:{message}"
    cached = _cache_get(store.response_cache, cache_key)
    if cached is not None:
        return dict(cached, cached=True)

    candidates = hybrid_search(store, document_id, message)
    if not candidates:
        return {"response": NO_CONTEXT_REPLY, "sources": [], "cached": False}

    answer = generate_text(build_chat_prompt(message, candidates))
    _cache_put(store.response_cache, cache_key, {"response": answer, "sources": candidates},
               RESPONSE_CACHE_SIZE)
    return {"response": answer, "sources": candidates, "cached": False}


# -------------------------
# Upstream documents
# -------------------------
def fetch_document_text(url: str) -> str:
    """
    [R] Downloads a plain-text document for processing.
    """
    resp = requests.get(url, timeout=HTTP_TIMEOUT)
    if resp.status_code != 200:
        raise RuntimeError(f"Document fetch returned {resp.status_code}: {resp.text[:300]}")
    return resp.text
