"""Engine components.

- Settings loaded from .env / environment
- Structured logging
- Event ingestion, scheduling and action dispatch
- Workflow job control with locking and deduplication
"""
