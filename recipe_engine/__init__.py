"""Chunked asynchronous recipe generation with decoupled image enrichment."""

__version__ = "0.1.0"
