"""Market perception -- indicators and context sources."""
