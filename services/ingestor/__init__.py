"""Ingestor service: exchange trade feed to the durable log."""
