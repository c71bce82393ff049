"""Domain services and third-party clients."""
