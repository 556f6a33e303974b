"""
Top-level package for the KH Statement Service.

This package exposes:
- Section classification of invoices
- Aggregation into control statement lines and control sums
- DPHKH1 XML document building
- Submission lifecycle, OCR job queue
- CLI entrypoints and an HTTP API (FastAPI)
"""

__version__ = "0.1.0"

__all__ = [
    "schema",
    "classifier",
    "aggregator",
    "control_sums",
    "builder",
    "submissions",
    "service",
]
