"""Command-line interface for agent-autopilot."""
