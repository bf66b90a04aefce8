"""
Retrieval-augmented indexing pipeline for Markdown notes.

Provides the embedding provider abstraction, the document chunker, the
vector store abstraction, the indexer, the retriever and the RAGService
façade that ties them together.
"""

from __future__ import annotations
