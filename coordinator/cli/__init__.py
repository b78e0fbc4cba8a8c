"""Command-line client for the coordinator."""
