"""devloop CLI."""
