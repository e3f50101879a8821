"""Shared framework, storage, schema and utility code for the trade stream services."""
