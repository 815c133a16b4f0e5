"""Exchange adapter contracts and venue clients."""
