"""Network connectivity monitoring."""
