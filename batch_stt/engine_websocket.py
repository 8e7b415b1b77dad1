from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from logging import getLogger
from typing import Optional
from urllib.parse import urlencode

from websockets import connect, ConnectionClosed, ConnectionClosedOK, InvalidStatus

from batch_stt.engine import EmitFn
from batch_stt.errors import ENGINE_NETWORK, ENGINE_NOT_ALLOWED
from batch_stt.events import (
    AudioEnded,
    AudioStarted,
    EngineEnded,
    EngineError,
    EngineStarted,
    NoMatch,
    ResultTracker,
)
from config import (
    AUDIO_CHANNELS,
    AUDIO_SAMPLE_RATE,
    STT_CONNECT_TIMEOUT_S,
    STT_ENDPOINTING_MS,
    STT_LANGUAGE,
    STT_MODEL,
    STT_REALTIME_URL,
)

logger = getLogger(__name__)


@dataclass(frozen=True)
class WebSocketEngineConfig:
    api_key: str
    # Live audio endpoint (Deepgram-compatible query API)
    base_url: str = STT_REALTIME_URL

    model: str = STT_MODEL
    language: str = STT_LANGUAGE
    punctuate: bool = True
    interim_results: bool = True
    max_alternatives: int = 1

    # Raw PCM, headerless
    encoding: str = "linear16"
    sample_rate: int = AUDIO_SAMPLE_RATE
    channels: int = AUDIO_CHANNELS

    endpointing_ms: int = STT_ENDPOINTING_MS
    connect_timeout_s: float = STT_CONNECT_TIMEOUT_S

    def url(self) -> str:
        qs = urlencode(
            {
                "model": self.model,
                "language": self.language,
                "encoding": self.encoding,
                "sample_rate": str(self.sample_rate),
                "channels": str(self.channels),
                "punctuate": str(self.punctuate).lower(),
                "interim_results": str(self.interim_results).lower(),
                "alternatives": str(self.max_alternatives),
                "endpointing": str(self.endpointing_ms),
            }
        )
        return f"{self.base_url}?{qs}"


def _error_kind(message: str) -> str:
    lowered = message.lower()
    if "401" in lowered or "403" in lowered or "auth" in lowered or "forbidden" in lowered:
        return ENGINE_NOT_ALLOWED
    return message


class WebSocketRecognitionEngine:
    """
    Continuous recognition over a live-audio WebSocket.

    - Reads PCM chunks from ``audio_queue``; ``None`` marks the end of audio.
    - Sends {"type":"Finalize"} and {"type":"CloseStream"} once audio ends.
    - Every Results message (interim or final) becomes an ``EngineResult``.
    """

    def __init__(self, cfg: WebSocketEngineConfig, audio_queue: asyncio.Queue) -> None:
        self._cfg = cfg
        self._audio_queue = audio_queue
        self._ws = None
        self._emit: Optional[EmitFn] = None
        self._rx_task: Optional[asyncio.Task] = None
        self._tx_task: Optional[asyncio.Task] = None
        self._tracker = ResultTracker()
        self._closing = False
        self._ended = False

    async def start(self, emit: EmitFn) -> None:
        self._emit = emit
        url = self._cfg.url()
        logger.debug("[ENGINE] WebSocket: connecting to %s", url)
        try:
            self._ws = await asyncio.wait_for(
                connect(
                    url,
                    additional_headers={"Authorization": f"token {self._cfg.api_key}"},
                    open_timeout=10,
                    ping_interval=10,
                    ping_timeout=10,
                    close_timeout=5,
                    max_queue=32,
                ),
                timeout=self._cfg.connect_timeout_s,
            )
        except InvalidStatus as e:
            status = e.response.status_code
            logger.error("[ENGINE] WebSocket: handshake rejected with HTTP %d", status)
            if status in (401, 403):
                raise RuntimeError(f"Recognition service rejected the credentials (HTTP {status})") from e
            raise
        except asyncio.TimeoutError:
            raise RuntimeError(
                f"Recognition service connection timed out after {self._cfg.connect_timeout_s:.0f}s"
            )

        logger.info("[ENGINE] WebSocket: connected, starting sender and receiver...")
        self._rx_task = asyncio.create_task(self._recv_loop())
        self._tx_task = asyncio.create_task(self._send_loop())
        emit(EngineStarted())

    async def stop(self) -> None:
        """Ask the service to flush pending results, then close the socket."""
        if self._ws is None:
            return
        if not self._closing:
            try:
                await self._ws.send(json.dumps({"type": "Finalize"}))
                await self._ws.send(json.dumps({"type": "CloseStream"}))
            except ConnectionClosed:
                logger.debug("[ENGINE] WebSocket: already closed while finalizing.")
        await self._shutdown()

    async def abort(self) -> None:
        await self._shutdown()

    async def _shutdown(self) -> None:
        self._closing = True
        for task in (self._tx_task, self._rx_task):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except ConnectionClosed:
                pass
        self._tx_task = None
        self._rx_task = None
        self._end()

    def _end(self) -> None:
        if self._ended or self._emit is None:
            return
        self._ended = True
        self._emit(EngineEnded())

    async def _send_loop(self) -> None:
        first = True
        try:
            while True:
                chunk = await self._audio_queue.get()
                if chunk is None:
                    logger.info("[ENGINE] WebSocket: end of audio, finalizing.")
                    self._emit(AudioEnded())
                    self._closing = True
                    await self._ws.send(json.dumps({"type": "Finalize"}))
                    await self._ws.send(json.dumps({"type": "CloseStream"}))
                    return
                if first:
                    first = False
                    self._emit(AudioStarted())
                await self._ws.send(chunk)
        except ConnectionClosed:
            logger.warning("[ENGINE] WebSocket: connection closed while sending audio.")

    async def _recv_loop(self) -> None:
        logger.debug("[ENGINE] WebSocket: receiver started.")
        try:
            async for msg in self._ws:
                if isinstance(msg, (bytes, bytearray)):
                    logger.warning("[ENGINE] WebSocket: unexpected binary message (%d bytes)", len(msg))
                    continue

                data = json.loads(msg)
                typ = data.get("type")

                if typ == "Results":
                    alts = (data.get("channel") or {}).get("alternatives") or []
                    text = (alts[0].get("transcript") or "").strip() if alts else ""
                    is_final = bool(data.get("is_final", False))
                    if not text:
                        if is_final:
                            self._emit(NoMatch())
                        continue
                    confidence = float(alts[0].get("confidence", 1.0))
                    self._emit(self._tracker.push(text, is_final, confidence))
                    continue

                if typ in ("Metadata", "UtteranceEnd", "SpeechStarted"):
                    logger.debug("[ENGINE] WebSocket: received %s", typ)
                    continue

                if typ == "Error" or "error" in data:
                    message = str(data.get("description") or data.get("message") or data.get("error") or data)
                    logger.error("[ENGINE] WebSocket: service error: %s", message)
                    self._emit(EngineError(error=_error_kind(message), message=message))
                    return

            logger.debug("[ENGINE] WebSocket: session closed cleanly.")
            self._end()

        except ConnectionClosedOK:
            logger.debug("[ENGINE] WebSocket: session closed cleanly.")
            self._end()
        except ConnectionClosed as e:
            if self._closing:
                logger.debug("[ENGINE] WebSocket: closed during shutdown (%s).", e)
                self._end()
            else:
                logger.warning("[ENGINE] WebSocket: connection closed unexpectedly: %s", e)
                self._emit(EngineError(error=ENGINE_NETWORK, message=str(e)))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("[ENGINE] WebSocket: receiver crashed: %r", e)
            self._emit(EngineError(error=ENGINE_NETWORK, message=repr(e)))


class WebSocketEngineFactory:
    """Builds one WebSocketRecognitionEngine per session start or restart, all reading the same audio queue."""

    def __init__(self, cfg: WebSocketEngineConfig, audio_queue: asyncio.Queue) -> None:
        self._cfg = cfg
        self._audio_queue = audio_queue

    def is_supported(self) -> bool:
        return bool(self._cfg.api_key)

    def is_secure_context(self) -> bool:
        return self._cfg.base_url.startswith("wss://")

    def create(self) -> WebSocketRecognitionEngine:
        return WebSocketRecognitionEngine(self._cfg, self._audio_queue)
