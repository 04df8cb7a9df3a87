"""Command-line interface for PULSE."""
