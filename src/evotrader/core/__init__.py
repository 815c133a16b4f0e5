"""Core loop primitives -- types, event bus, heartbeat and the evaluation loop."""
