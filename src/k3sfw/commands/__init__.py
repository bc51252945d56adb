"""CLI command groups for k3sfw."""
