"""
Batch speech session. Keeps a continuous recognition session alive and turns
its results into text batches.

Wiring
------
    engine --emit--> event queue --consumer task--> BatchAccumulator --> on_batch_complete
                                         |
                                         +--> error policy --> restart task (new EngineAdapter)
                                                           +--> terminal stop --> on_error

Only one task consumes engine events, so handlers never interleave. The
consumer, the silence watchdog and the restart task are owned by the session
and are cancelled on every stop path.

Usage::

    session = BatchSpeechSession(
        SessionConfig(
            on_batch_complete=lambda text, ts: print(ts, text),
            on_live_transcription=lambda text: None,
            on_error=print,
            on_status_change=lambda recording: None,
        ),
        WebSocketEngineFactory(WebSocketEngineConfig(api_key=key), audio_queue),
    )
    await session.start()
    ...
    await session.stop()
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from logging import getLogger
from typing import Awaitable, Callable, Optional, Tuple

from batch_stt.accumulator import BatchAccumulator
from batch_stt.engine import EngineAdapter, EngineFactory
from batch_stt.errors import (
    ENGINE_ABORTED,
    ENGINE_AUDIO_CAPTURE,
    ENGINE_NETWORK,
    ENGINE_NO_SPEECH,
    ENGINE_NOT_ALLOWED,
    MSG_INSECURE_CONTEXT,
    MSG_NETWORK_RECOVERY_FAILED,
    MSG_NO_MICROPHONE,
    MSG_NO_NETWORK,
    MSG_NO_SPEECH,
    MSG_NOT_SUPPORTED,
    MSG_PERMISSION_DENIED,
    MSG_RESTART_EXHAUSTED,
    MSG_RESTART_FAILED,
    MSG_SILENCE_TIMEOUT,
    MSG_START_FAILED,
    MSG_START_NO_MICROPHONE,
    MSG_START_NO_NETWORK,
    MSG_UNKNOWN_ENGINE_ERROR,
    MSG_UNSTABLE_CONNECTION,
    SessionError,
    SessionErrorKind,
)
from batch_stt.events import (
    AudioEnded,
    AudioStarted,
    EngineEnded,
    EngineError,
    EngineEvent,
    EngineResult,
    EngineStarted,
    NoMatch,
)
from batch_stt.resilience import ConnectivityProbe, RestartBudget, SilenceWatchdog, cancel_task
from config import (
    MAX_RESTART_ATTEMPTS,
    NETWORK_RETRY_DELAY_MS,
    SILENCE_CHECK_INTERVAL_MS,
    SILENCE_TIMEOUT_MS,
    SIMILARITY_THRESHOLD,
)

logger = getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    LISTENING = "listening"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


@dataclass(frozen=True)
class SessionConfig:
    """
    Caller configuration, fixed for the lifetime of a session.

    Attributes:
        on_batch_complete: Called with (text, ISO-8601 timestamp) for every batch.
        on_live_transcription: Called with the current unsettled text after
            every result, and with "" after each batch.
        on_error: Called with a human-readable message for every caller-visible failure.
        on_status_change: Called with True when listening starts and False when it stops.
        silence_timeout_ms: Stop after this long without speech.
    """
    on_batch_complete: Callable[[str, str], None]
    on_live_transcription: Callable[[str], None]
    on_error: Callable[[str], None]
    on_status_change: Callable[[bool], None]
    silence_timeout_ms: int = SILENCE_TIMEOUT_MS

    max_restart_attempts: int = MAX_RESTART_ATTEMPTS
    network_retry_delay_ms: int = NETWORK_RETRY_DELAY_MS
    silence_check_interval_ms: int = SILENCE_CHECK_INTERVAL_MS
    similarity_threshold: float = SIMILARITY_THRESHOLD


async def assume_microphone_granted() -> bool:
    """Default microphone probe for engines fed from an audio queue rather than a device."""
    return True


class BatchSpeechSession:

    def __init__(
            self,
            config: SessionConfig,
            engine_factory: EngineFactory,
            *,
            connectivity: Optional[ConnectivityProbe] = None,
            microphone_probe: Callable[[], Awaitable[bool]] = assume_microphone_granted,
    ) -> None:
        self._config = config
        self._engine_factory = engine_factory
        self._connectivity = connectivity or ConnectivityProbe()
        self._microphone_probe = microphone_probe

        self._accumulator = BatchAccumulator(
            config.on_batch_complete,
            config.on_live_transcription,
            similarity_threshold=config.similarity_threshold,
        )
        self._watchdog = SilenceWatchdog(
            config.silence_timeout_ms,
            self._on_silence_timeout,
            interval_ms=config.silence_check_interval_ms,
        )
        self._restarts = RestartBudget(config.max_restart_attempts)

        self._state = SessionState.IDLE
        self._is_recording = False
        self._manually_stopped = False
        self._is_reconnecting = False
        # on_status_change(True) was reported for the current session
        self._announced = False

        self._generation = 0
        self._adapter: Optional[EngineAdapter] = None
        self._events: asyncio.Queue[Tuple[int, EngineEvent]] = asyncio.Queue()
        self._consumer_task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Read-only view
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_recording(self) -> bool:
        return self._is_recording

    @property
    def manually_stopped(self) -> bool:
        return self._manually_stopped

    @property
    def is_reconnecting(self) -> bool:
        return self._is_reconnecting

    @property
    def restart_attempts(self) -> int:
        return self._restarts.attempts

    @property
    def accumulator(self) -> BatchAccumulator:
        return self._accumulator

    @property
    def watchdog_armed(self) -> bool:
        return self._watchdog.armed

    async def drain(self) -> None:
        """Wait until every engine event queued so far has been handled."""
        consumer = self._consumer_task
        if consumer is None:
            return
        joined = asyncio.ensure_future(self._events.join())
        try:
            # a terminal stop ends the consumer with events still queued
            await asyncio.wait({joined, consumer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            joined.cancel()

    # ------------------------------------------------------------------
    # Public control
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start listening. Failures are reported through on_error, never raised."""
        if self._is_recording or self._state == SessionState.STARTING:
            logger.info("[SESSION] Already recording, ignoring start request.")
            return

        self._state = SessionState.STARTING
        try:
            await self._check_preconditions()

            self._manually_stopped = False
            self._is_reconnecting = False
            self._announced = False
            self._restarts.reset()
            self._accumulator.reset()
            self._events = asyncio.Queue()
            self._consumer_task = asyncio.create_task(self._consume_events())

            logger.info("[SESSION] Starting speech recognition.")
            self._watchdog.touch()
            await self._launch_engine()
            self._is_recording = True
        except Exception as e:
            logger.error("[SESSION] Failed to start speech recognition: %s", e)
            await self._discard_engine()
            cancel_task(self._consumer_task)
            self._consumer_task = None
            self._is_recording = False
            self._state = SessionState.IDLE
            self._config.on_status_change(False)
            reason = e.message if isinstance(e, SessionError) else (str(e) or e.__class__.__name__)
            self._config.on_error(MSG_START_FAILED.format(reason=reason))

    async def stop(self) -> None:
        """Stop listening, flushing pending text first. A no-op when not recording."""
        if not self._is_recording:
            logger.info("[SESSION] Not recording, ignoring stop request.")
            return

        logger.info("[SESSION] Stopping speech recognition.")
        self._manually_stopped = True
        self._is_recording = False

        self._flush(force=True)
        cancel_task(self._restart_task)
        self._restart_task = None
        self._watchdog.disarm()
        await self._discard_engine()
        cancel_task(self._consumer_task)
        self._consumer_task = None

        self._restarts.reset()
        self._is_reconnecting = False
        self._announced = False
        self._accumulator.reset()
        self._state = SessionState.STOPPED
        self._config.on_status_change(False)

    # ------------------------------------------------------------------
    # Engine lifecycle
    # ------------------------------------------------------------------

    async def _check_preconditions(self) -> None:
        if not self._engine_factory.is_supported():
            raise SessionError(SessionErrorKind.UNSUPPORTED_ENVIRONMENT, MSG_NOT_SUPPORTED)
        if not self._engine_factory.is_secure_context():
            raise SessionError(SessionErrorKind.UNSUPPORTED_ENVIRONMENT, MSG_INSECURE_CONTEXT)
        if not await self._connectivity.check():
            raise SessionError(SessionErrorKind.NO_NETWORK, MSG_START_NO_NETWORK)
        if not await self._microphone_probe():
            raise SessionError(SessionErrorKind.PERMISSION_DENIED, MSG_START_NO_MICROPHONE)

    async def _launch_engine(self) -> None:
        """Create a fresh engine adapter (discarding any previous one) and start it."""
        await self._discard_engine()
        self._generation += 1
        generation = self._generation
        adapter = EngineAdapter(
            self._engine_factory.create(),
            lambda event: self._events.put_nowait((generation, event)),
            generation,
        )
        self._adapter = adapter
        await adapter.start()

    async def _discard_engine(self) -> None:
        adapter, self._adapter = self._adapter, None
        if adapter is not None:
            await adapter.close(abort=True)

    def _detach_engine(self) -> None:
        """Stop listening to the current engine right away; it is closed by the restart task."""
        if self._adapter is not None:
            self._adapter.detach()

    def _schedule_restart(self, reason: str) -> None:
        if not self._is_recording or self._manually_stopped:
            return
        if self._restart_task is not None and not self._restart_task.done():
            logger.debug("[SESSION] Restart already pending, ignoring %s.", reason)
            return
        self._detach_engine()
        logger.info(
            "[SESSION] Restarting after %s (%d/%d).", reason, self._restarts.attempts, self._restarts.max_attempts
        )
        self._state = SessionState.RECONNECTING
        self._restart_task = asyncio.create_task(self._restart())

    async def _restart(self) -> None:
        await self._discard_engine()
        await asyncio.sleep(self._config.network_retry_delay_ms / 1000.0)
        if not self._is_recording or self._manually_stopped:
            return
        try:
            await self._launch_engine()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("[SESSION] Failed to restart recognition: %r", e)
            await self._terminate(SessionErrorKind.RESTART_EXHAUSTED, MSG_RESTART_FAILED)

    async def _recover_network(self) -> None:
        """Reconnect after a network error; runs with is_reconnecting set by the caller."""
        self._state = SessionState.RECONNECTING
        try:
            await self._discard_engine()
            connected = await self._connectivity.check()
            if self._manually_stopped:
                return
            if not connected:
                await self._terminate(SessionErrorKind.NO_NETWORK, MSG_NO_NETWORK)
                return

            if not self._restarts.consume():
                await self._terminate(SessionErrorKind.RESTART_EXHAUSTED, MSG_UNSTABLE_CONNECTION)
                return

            logger.info(
                "[NET] Reconnecting in %d ms (%d/%d).",
                self._config.network_retry_delay_ms, self._restarts.attempts, self._restarts.max_attempts,
            )
            await asyncio.sleep(self._config.network_retry_delay_ms / 1000.0)
            if self._manually_stopped:
                return
            await self._launch_engine()
            logger.info("[NET] Recognition restarted after network error.")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("[NET] Error during network recovery: %r", e)
            await self._terminate(SessionErrorKind.NO_NETWORK, MSG_NETWORK_RECOVERY_FAILED)
        finally:
            self._is_reconnecting = False

    async def _terminate(self, kind: SessionErrorKind, message: str) -> None:
        """Flush, stop and report a fatal error."""
        logger.warning("[SESSION] Terminal stop (%s): %s", kind.value, message)
        self._flush(force=True)
        await self.stop()
        self._config.on_error(message)

    def _flush(self, force: bool) -> None:
        self._accumulator.process_batch(force=force)
        if force:
            self._watchdog.disarm()

    async def _on_silence_timeout(self) -> None:
        if not self._is_recording:
            return
        await self._terminate(SessionErrorKind.NO_SPEECH_TIMEOUT, MSG_SILENCE_TIMEOUT)

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    async def _consume_events(self) -> None:
        """Single consumer of engine events; stale events from discarded engines are dropped."""
        queue = self._events
        while self._consumer_task is asyncio.current_task():
            generation, event = await queue.get()
            try:
                adapter = self._adapter
                if adapter is None or adapter.generation != generation or not adapter.attached:
                    logger.debug("[SESSION] Ignoring stale event from engine #%d: %r", generation, event)
                    continue
                await self._dispatch(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("[SESSION] Event handler crashed on %r: %r", event, e)
            finally:
                queue.task_done()

    async def _dispatch(self, event: EngineEvent) -> None:
        if isinstance(event, EngineStarted):
            self._handle_start()
        elif isinstance(event, EngineResult):
            self._handle_result(event)
        elif isinstance(event, EngineError):
            await self._handle_error(event)
        elif isinstance(event, EngineEnded):
            await self._handle_end()
        elif isinstance(event, AudioStarted):
            logger.debug("[SESSION] Audio recording started.")
            self._watchdog.touch()
        elif isinstance(event, AudioEnded):
            logger.debug("[SESSION] Audio recording ended.")
            self._flush(force=True)
        elif isinstance(event, NoMatch):
            logger.debug("[SESSION] No speech was recognized.")

    def _handle_start(self) -> None:
        self._state = SessionState.LISTENING
        self._accumulator.reset()
        self._watchdog.touch()
        self._watchdog.arm()
        if self._announced:
            logger.info("[SESSION] Recording resumed.")
            return
        logger.info("[SESSION] Recording started.")
        self._announced = True
        self._restarts.reset()
        self._config.on_status_change(True)

    def _handle_result(self, event: EngineResult) -> None:
        if self._manually_stopped:
            return
        self._watchdog.touch()
        self._restarts.reset()
        self._accumulator.handle_result(event)

    async def _handle_error(self, event: EngineError) -> None:
        error = event.error
        logger.info("[SESSION] Speech recognition error: %s %s", error, event.message)

        if error == ENGINE_NOT_ALLOWED:
            await self._terminate(SessionErrorKind.PERMISSION_DENIED, MSG_PERMISSION_DENIED)
            return

        if error == ENGINE_NETWORK:
            if self._manually_stopped:
                return
            if self._is_reconnecting:
                logger.debug("[NET] Reconnect already in progress.")
                return
            self._is_reconnecting = True
            self._detach_engine()
            cancel_task(self._restart_task)
            self._restart_task = asyncio.create_task(self._recover_network())
            return

        if error == ENGINE_AUDIO_CAPTURE:
            await self._terminate(SessionErrorKind.NO_MICROPHONE, MSG_NO_MICROPHONE)
            return

        if error == ENGINE_NO_SPEECH and not self._manually_stopped:
            if self._restarts.consume():
                self._schedule_restart("no speech")
                return
            await self._terminate(SessionErrorKind.RESTART_EXHAUSTED, MSG_NO_SPEECH)
            return

        if error == ENGINE_ABORTED and not self._manually_stopped:
            # not counted itself; the engine's end event restarts it through the budget in _handle_end
            if not self._restarts.remaining:
                await self._terminate(SessionErrorKind.RESTART_EXHAUSTED, MSG_RESTART_EXHAUSTED)
                return
            logger.debug("[SESSION] Engine aborted, restarting once it ends.")
            return

        await self._terminate(SessionErrorKind.UNKNOWN_ENGINE_ERROR, MSG_UNKNOWN_ENGINE_ERROR.format(error=error))

    async def _handle_end(self) -> None:
        logger.info("[SESSION] Recognition service disconnected.")
        if self._manually_stopped or not self._is_recording:
            return

        if self._restarts.consume():
            self._schedule_restart("disconnect")
            return
        await self._terminate(SessionErrorKind.RESTART_EXHAUSTED, MSG_RESTART_EXHAUSTED)
