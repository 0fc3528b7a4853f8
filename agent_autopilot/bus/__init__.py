"""Output bus: one multiplexed terminal stream, one handler list per session."""

from agent_autopilot.bus.events import OutputChunk, SessionExit
from agent_autopilot.bus.queue import OutputBus

__all__ = ["OutputBus", "OutputChunk", "SessionExit"]
