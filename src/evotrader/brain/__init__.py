"""Decision sources and lesson memory."""
