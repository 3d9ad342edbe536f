"""docindex: document chunking, embedding and hybrid retrieval.

Subpackages and modules:
- chunking: strategy selection and token-bounded chunk production
- embedding_pipeline: batched, rate-limited, retried embedding with caching
- jobs / processor: per-document processing job state machine
- index / search: in-memory vector + keyword index and hybrid ranking
- store: record persistence (in-memory or SQLAlchemy)
- main / cli: FastAPI application and command-line entrypoint
"""
