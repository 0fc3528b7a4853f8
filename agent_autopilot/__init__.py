"""agent-autopilot - supervise CLI coding agents running in terminals."""

__version__ = "0.4.0"
__logo__ = "[autopilot]"
