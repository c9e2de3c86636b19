"""Long-lived connection handlers."""
