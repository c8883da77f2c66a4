"""Per-site knowledge base: crawling, chunking, embedding, vector storage, retrieval-augmented
generation and business intelligence synthesis.

Submodules overview:
- main: FastAPI application and /api/rag routes.
- cli: argparse command line (init-db, initialize, refresh, delete, status, query, serve).
- services: explicit service wiring and the upward operations.
- orchestrator: pipeline driver and status state machine.
- business_intel: four-pass profile synthesis with placeholder scrubbing.
- retrieval: embed, retrieve, threshold filter and generate.
- vector_store: vector clients (pgvector, in-memory) and the namespaced VectorIndex.
- embedding: batched embedding generation and validation.
- generation: chat completion client.
- crawler: BFS site crawler and document classifier.
- chunking: text cleaning and word-window chunking.
- store: relational store boundary (sites, status, documents).
- locks: per-site pipeline locks (in-process, Redis).
- retry: wait-until-ready combinator.
- config, db, models, schemas, errors, obs, utils: supporting pieces.
"""
