"""Fan-out of the multiplexed terminal output stream."""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING, Callable

from loguru import logger

from agent_autopilot.bus.events import OutputChunk, SessionExit

if TYPE_CHECKING:
    from agent_autopilot.engine.host import TerminalHost

ChunkHandler = Callable[[str], None]
ExitHandler = Callable[[int | None], None]


class OutputBus:
    """Turns one `(chunk, session_id)` stream into per-session handler calls.

    Handlers only ever see output of the session they registered for. A
    failing handler is logged and does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._chunk_handlers: dict[str, list[ChunkHandler]] = defaultdict(list)
        self._exit_handlers: dict[str, list[ExitHandler]] = defaultdict(list)
        self._detach: Callable[[], None] | None = None

    def attach(self, host: "TerminalHost") -> None:
        """Subscribe to a host's multiplexed output stream."""
        self.detach()
        self._detach = host.subscribe(self.publish, self.publish_exit)

    def detach(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None

    def register(
        self,
        session_id: str,
        on_chunk: ChunkHandler,
        on_exit: ExitHandler | None = None,
    ) -> Callable[[], None]:
        """Register handlers for one session; returns a function that removes them."""
        self._chunk_handlers[session_id].append(on_chunk)
        if on_exit is not None:
            self._exit_handlers[session_id].append(on_exit)

        def _remove() -> None:
            handlers = self._chunk_handlers.get(session_id, [])
            if on_chunk in handlers:
                handlers.remove(on_chunk)
            exits = self._exit_handlers.get(session_id, [])
            if on_exit is not None and on_exit in exits:
                exits.remove(on_exit)

        return _remove

    def publish(self, data: str, session_id: str) -> None:
        self._dispatch(OutputChunk(session_id=session_id, data=data))

    def publish_exit(self, session_id: str, exit_code: int | None = None) -> None:
        self._dispatch(SessionExit(session_id=session_id, exit_code=exit_code))

    def _dispatch(self, event: OutputChunk | SessionExit) -> None:
        if isinstance(event, OutputChunk):
            for handler in list(self._chunk_handlers.get(event.session_id, [])):
                try:
                    handler(event.data)
                except Exception:
                    logger.exception(f"[bus] output handler failed for {event.session_id}")
            return
        for handler in list(self._exit_handlers.get(event.session_id, [])):
            try:
                handler(event.exit_code)
            except Exception:
                logger.exception(f"[bus] exit handler failed for {event.session_id}")
