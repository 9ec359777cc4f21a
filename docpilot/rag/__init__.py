"""Ingestion and retrieval engine.

This package contains modules for:
- Document parsing (slide decks, PDFs, legacy Word files)
- Document chunking with overlap
- Embedding batching, caching and retries
- FAISS vector index with snapshots and persistence
- Semantic retrieval and context assembly
- The indexing pipeline and file watching
"""
