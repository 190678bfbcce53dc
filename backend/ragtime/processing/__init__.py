"""
Document Processing Package
════════════════════════════

  Text → Chunking → Embedding

Modules
───────
  chunking.py    Boundary-aware fixed-window chunker (pure)
  embeddings.py  Batch embedding client (OpenAI) with typed error wrapping
"""

from ragtime.processing.chunking import TextChunk, chunk_text
from ragtime.processing.embeddings import Embedding, EmbeddingClientBase, OpenAIEmbeddingClient

__all__ = [
    "TextChunk",
    "chunk_text",
    "Embedding",
    "EmbeddingClientBase",
    "OpenAIEmbeddingClient",
]
