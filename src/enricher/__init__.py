"""
Enricher: batch email enrichment with resumable, auditable output sinks.

Reads a list of email addresses, enriches each one through an external
model, and writes the results to a local CSV, a transactional dataset,
or an append-only record stream.
"""

__version__ = "0.1.0"
