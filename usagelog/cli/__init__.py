"""Command-line interface for the usage logger."""
