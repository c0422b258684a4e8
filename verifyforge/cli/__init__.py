"""Command-line tools for Verify Forge."""
