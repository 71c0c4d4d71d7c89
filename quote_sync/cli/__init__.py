"""Command-line entry points (quote-sync)."""
