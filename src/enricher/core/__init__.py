# src/enricher/core/__init__.py
"""Core infrastructure: logging, configuration, cancellation, rate limiting."""
