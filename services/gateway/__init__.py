"""Gateway service: latest-price reads, trade history and live update relay."""
