"""
Event Harvester

Background ingestion pipeline that:
- Crawls the Eventful search API city by city, one page per job
- Normalizes and sanitizes raw listings before publishing them
- Publishes events and categories to the shared remote store
- Sweeps expired events and categories on a periodic refresh job

Jobs live in a durable queue with priorities and retry/backoff.
"""

__version__ = "1.0.0"
