"""Trade processor service: moving-average aggregation, batched persistence and fan-out."""
