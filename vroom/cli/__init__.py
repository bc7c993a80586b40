"""Command line interface for vroom."""
