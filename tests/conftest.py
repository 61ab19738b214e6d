import zlib

import numpy as np
import pytest

import rag_core
from mock_db import DOCUMENTS

DIM = 1024


def fake_embed(text):
    # bag-of-words hashed into a small vector; deterministic across runs
    vec = np.zeros(DIM, dtype="float32")
    for tok in rag_core.tokenize(text):
        vec[zlib.crc32(tok.encode()) % DIM] += 1.0
    return vec / (np.linalg.norm(vec) + 1e-12)


class FakeModel:
    prompts = []

    def __init__(self, name, generation_config=None):
        self.name = name
        self.generation_config = generation_config

    def generate_content(self, prompt):
        FakeModel.prompts.append(prompt)

        class _Resp:
            text = f"answer from {self.name}"
        return _Resp()


@pytest.fixture
def embed(monkeypatch):
    monkeypatch.setattr(rag_core, "embed_text", fake_embed)
    return fake_embed


@pytest.fixture
def gemini(monkeypatch):
    FakeModel.prompts = []
    monkeypatch.setattr(rag_core.genai, "GenerativeModel", FakeModel)
    return FakeModel


@pytest.fixture
def store(embed):
    s = rag_core.DocumentStore()
    for doc_id, content in DOCUMENTS.items():
        s.process_document(doc_id, content)
    return s
