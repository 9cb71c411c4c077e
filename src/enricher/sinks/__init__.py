# src/enricher/sinks/__init__.py
"""Platform output sinks: dataset snapshots and record streams."""

from enricher.sinks.base import OutputSink
from enricher.sinks.snapshot import SnapshotSink, TransactionHandle
from enricher.sinks.stream import StreamSink

__all__ = ["OutputSink", "SnapshotSink", "StreamSink", "TransactionHandle"]
