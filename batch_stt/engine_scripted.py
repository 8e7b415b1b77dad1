"""
Scripted recognition engine for tests and offline demos.

Each engine instance plays one script: a sequence of ``Say`` and ``Pause``
steps, plus raw engine events that are emitted as they are. The engine
acknowledges ``start()`` with ``EngineStarted`` automatically.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from logging import getLogger
from typing import List, Optional, Sequence, Union

from batch_stt.engine import EmitFn
from batch_stt.events import EngineEvent, EngineStarted, ResultTracker

logger = getLogger(__name__)


@dataclass(frozen=True)
class Say:
    text: str
    is_final: bool = True
    confidence: float = 1.0


@dataclass(frozen=True)
class Pause:
    seconds: float


Step = Union[Say, Pause, EngineEvent]


class ScriptedRecognitionEngine:

    def __init__(self, script: Sequence[Step] = (), *, fail_start: Optional[Exception] = None) -> None:
        self._script = list(script)
        self._fail_start = fail_start
        self._emit: Optional[EmitFn] = None
        self._task: Optional[asyncio.Task] = None
        self._tracker = ResultTracker()
        self.played = asyncio.Event()
        self.started = False
        self.stop_calls = 0
        self.abort_calls = 0

    async def start(self, emit: EmitFn) -> None:
        if self._fail_start is not None:
            raise self._fail_start
        self._emit = emit
        self.started = True
        emit(EngineStarted())
        self._task = asyncio.create_task(self._play())

    async def stop(self) -> None:
        self.stop_calls += 1
        self._cancel()

    async def abort(self) -> None:
        self.abort_calls += 1
        self._cancel()

    def _cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _play(self) -> None:
        try:
            for step in self._script:
                if isinstance(step, Pause):
                    await asyncio.sleep(step.seconds)
                elif isinstance(step, Say):
                    self._emit(self._tracker.push(step.text, step.is_final, step.confidence))
                else:
                    self._emit(step)
                # let the session consume each event before the next one
                await asyncio.sleep(0)
        finally:
            self.played.set()


class ScriptedEngineFactory:
    """
    Hands out one scripted engine per ``create()``, in order.

    When the scripts run out, new engines get an empty script and simply stay
    started. Every engine created is kept in ``engines``.
    """

    def __init__(
            self,
            scripts: Sequence[Sequence[Step]] = (),
            *,
            supported: bool = True,
            secure: bool = True,
            fail_start: Optional[Exception] = None,
    ) -> None:
        self._scripts = [list(s) for s in scripts]
        self._supported = supported
        self._secure = secure
        self._fail_start = fail_start
        self.engines: List[ScriptedRecognitionEngine] = []

    def is_supported(self) -> bool:
        return self._supported

    def is_secure_context(self) -> bool:
        return self._secure

    def create(self) -> ScriptedRecognitionEngine:
        script = self._scripts[len(self.engines)] if len(self.engines) < len(self._scripts) else []
        engine = ScriptedRecognitionEngine(script, fail_start=self._fail_start)
        logger.debug("[ENGINE] Scripted: created engine #%d (%d steps)", len(self.engines) + 1, len(script))
        self.engines.append(engine)
        return engine
