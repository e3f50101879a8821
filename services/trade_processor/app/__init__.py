"""Trade processor application modules."""
