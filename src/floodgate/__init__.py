"""Floodgate: scheduled multi-source ingestion with dedup, entity resolution and alerting."""

__version__ = "0.1.0"
