"""Order ingest service: Kafka order documents persisted into a relational store."""

__version__ = "0.1.0"
