"""Evolution loop -- autopsy, opportunity scanning, PnL sync and lesson writes."""
