import os
import google.generativeai as genai

from rag_core import SearchCandidate, hybrid_merge, MERGE_POLICY, SCORE_NORMALIZATION
from mock_db import VECTOR_HITS, KEYWORD_HITS

print("GENERATION_MODEL    =", os.getenv("GENERATION_MODEL"))
print("EMBEDDING_MODEL     =", os.getenv("EMBEDDING_MODEL"))
print("MERGE_POLICY        =", MERGE_POLICY)
print("SCORE_NORMALIZATION =", SCORE_NORMALIZATION)

# Merge (no network)
merged = hybrid_merge([SearchCandidate(c, s) for c, s in VECTOR_HITS],
                      [SearchCandidate(c, s) for c, s in KEYWORD_HITS])
for c in merged:
    print(f"Merged: {c.score:.2f}  {c.content}")

genai.configure(api_key=os.getenv("GEMINI_API_KEY", ""))

# Embedding
emb = genai.embed_content(model=os.getenv("EMBEDDING_MODEL", "models/text-embedding-004"),
                          content="hello embeddings")
print("Embed len:", len(emb["embedding"]))

# Generation
model = genai.GenerativeModel(os.getenv("GENERATION_MODEL", "gemini-1.5-flash"))
resp = model.generate_content("Say hi in one short sentence.")
print("Gen:", resp.text)
