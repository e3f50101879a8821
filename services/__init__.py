"""Service implementations for the trade stream: ingestor, trade processor and gateway."""
