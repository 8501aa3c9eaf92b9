"""Transfer tracking, coordination and retry triggers."""
