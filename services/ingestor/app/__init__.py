"""Ingestor application modules."""
