"""Command-line entry point for snippet-runner."""
