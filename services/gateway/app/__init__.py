"""Gateway application modules."""
