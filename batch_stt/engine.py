"""
Recognition engine protocol and the adapter that owns one engine instance.

All engine implementations (the realtime WebSocket engine, the scripted
engine used in tests, …) conform to the RecognitionEngine protocol defined
here. The protocol uses structural typing (typing.Protocol), so engines do
not need to inherit from it; they just need to implement the methods.

Lifecycle
---------
An engine instance is single-use:

1. **Construction**: done by an ``EngineFactory``. No network calls happen
   here. The factory also answers the environment questions asked before a
   session starts (is the capability available, is the transport secure).

2. **start(emit)**: open the underlying stream. From now on the engine
   reports everything that happens by calling ``emit`` with one of the event
   types from ``batch_stt.events``: ``EngineStarted`` once it listens,
   ``EngineResult`` for every result change, ``EngineError`` on failures,
   ``AudioStarted``/``AudioEnded`` around the audio stream, ``NoMatch`` and
   finally ``EngineEnded``. ``emit`` never blocks.

3. **stop()**: finish gracefully (flush pending results, then end).
   **abort()**: drop everything immediately.

After stop, abort or an error the instance is discarded; a new one is created
for every restart.

Implementing a new engine
-------------------------
1. Create ``batch_stt/engine_<name>.py`` with a frozen ``@dataclass`` config
   (defaults from ``config.py``), the engine class, and a factory class.
2. Keep the engine in continuous mode with interim results and a single
   alternative per result; ``batch_stt.events.ResultTracker`` turns a flat
   stream of partial/final segments into cumulative result events.
3. Map provider failures to the raw error kinds in ``batch_stt.errors``
   (``network``, ``not-allowed``, ``audio-capture``, ``no-speech``,
   ``aborted``); anything else is reported verbatim. An ``aborted`` error
   must still be followed by ``EngineEnded``; the session restarts on the end.
"""

from __future__ import annotations

from logging import getLogger
from typing import Callable, Optional, Protocol

from batch_stt.events import EngineEvent


logger = getLogger(__name__)


EmitFn = Callable[[EngineEvent], None]


class RecognitionEngine(Protocol):
    """
    Structural protocol for continuous speech-recognition engines.

    See the module docstring for lifecycle details.
    """
    async def start(self, emit: EmitFn) -> None: ...
    async def stop(self) -> None: ...
    async def abort(self) -> None: ...


class EngineFactory(Protocol):
    """Creates fresh engine instances and describes the environment they run in."""
    def is_supported(self) -> bool: ...
    def is_secure_context(self) -> bool: ...
    def create(self) -> RecognitionEngine: ...


class EngineAdapter:
    """
    Owns exactly one engine instance and its event wiring.

    Events are forwarded to ``sink`` only while the adapter is attached.
    ``close()`` detaches first, so a dying engine can no longer reach the
    session, and only then aborts/stops the instance.
    """

    def __init__(self, engine: RecognitionEngine, sink: EmitFn, generation: int) -> None:
        self._engine: Optional[RecognitionEngine] = engine
        self._sink = sink
        self.generation = generation
        self._attached = True

    @property
    def attached(self) -> bool:
        return self._attached

    def _emit(self, event: EngineEvent) -> None:
        if not self._attached:
            logger.debug("[ENGINE] #%d: dropping event from detached engine: %r", self.generation, event)
            return
        self._sink(event)

    def detach(self) -> None:
        """Stop forwarding events; the engine itself keeps running until close()."""
        self._attached = False

    async def start(self) -> None:
        if self._engine is None:
            raise RuntimeError("Engine adapter was already closed and cannot be reused")
        logger.debug("[ENGINE] #%d: starting %s", self.generation, self._engine.__class__.__name__)
        await self._engine.start(self._emit)

    async def close(self, abort: bool = True) -> None:
        """Detach handlers, then abort (optional) and stop the engine. Safe to call twice."""
        self.detach()
        engine, self._engine = self._engine, None
        if engine is None:
            return
        try:
            if abort:
                await engine.abort()
            await engine.stop()
        except Exception as e:
            logger.warning("[ENGINE] #%d: error during engine teardown: %r", self.generation, e)
        logger.debug("[ENGINE] #%d: closed.", self.generation)
