"""Entry point for `python -m agent_autopilot`."""

from agent_autopilot.cli.commands import app

if __name__ == "__main__":
    app()
