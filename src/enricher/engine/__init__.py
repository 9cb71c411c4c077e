# src/enricher/engine/__init__.py
"""Run orchestration: incremental planning, platform retries, sink writes."""
