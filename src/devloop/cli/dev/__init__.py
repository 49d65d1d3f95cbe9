"""Dev command group for the devloop CLI."""
