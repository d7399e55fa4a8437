"""Backend pieces for the Markdown report converter.

This package intentionally keeps the FastAPI route handlers in server.py thin:
- scratch file lifecycle for a single request
- multipart decoding into a conversion request
- pandoc invocation with timeout and cancellation

Nothing here keeps state between requests. Every request owns its scratch
files and the only shared value is the read-only Config built at startup.
"""
from __future__ import annotations

__version__ = "1.0.0"
