# src/enricher/enrich/__init__.py
"""Enrichment collaborators: the Enricher protocol and its implementations."""

from enricher.enrich.base import Enricher
from enricher.enrich.gemini import GeminiEnricher, resolve_api_key
from enricher.enrich.traced import TracedEnricher

__all__ = ["Enricher", "GeminiEnricher", "TracedEnricher", "resolve_api_key"]
