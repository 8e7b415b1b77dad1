"""
Transcribe a WAV file through a batch speech session.

    python transcribe.py path/to/file.wav [realtime_factor]

The file must be 16 kHz mono 16-bit PCM. Batches are printed as they are
emitted; errors reported by the session are printed to stderr.
"""
from __future__ import annotations

import asyncio
import sys
from logging import getLogger
from pathlib import Path
from typing import List, Tuple

from batch_stt.engine_websocket import WebSocketEngineConfig, WebSocketEngineFactory
from batch_stt.session import BatchSpeechSession, SessionConfig
from batch_stt.utils import setup_logging
from batch_stt.wav_stream import stream_wav_to_queue
from config import CHUNK_MS, STT_API_KEY

setup_logging()
logger = getLogger(__name__)


async def transcribe_wav(wav_path: Path, *, api_key: str = STT_API_KEY, realtime_factor: float = 1.0) -> List[Tuple[str, str]]:
    """Stream the file into a session and return the (timestamp, text) batches it produced."""
    batches: List[Tuple[str, str]] = []
    errors: List[str] = []
    stopped = asyncio.Event()

    def on_batch(text: str, timestamp: str) -> None:
        batches.append((timestamp, text))
        print(f"[{timestamp}] {text}", flush=True)

    def on_error(message: str) -> None:
        errors.append(message)
        print(f"ERROR: {message}", file=sys.stderr, flush=True)

    def on_status(recording: bool) -> None:
        logger.info("Recording: %s", recording)
        if not recording:
            stopped.set()

    audio_queue: asyncio.Queue = asyncio.Queue(maxsize=200)
    session = BatchSpeechSession(
        SessionConfig(
            on_batch_complete=on_batch,
            on_live_transcription=lambda text: logger.debug("live: %s", text),
            on_error=on_error,
            on_status_change=on_status,
        ),
        WebSocketEngineFactory(WebSocketEngineConfig(api_key=api_key), audio_queue),
    )

    await session.start()
    if not session.is_recording:
        return batches

    running = asyncio.Event()
    running.set()
    streamer = asyncio.create_task(
        stream_wav_to_queue(wav_path, audio_queue, CHUNK_MS, realtime_factor=realtime_factor, running=running)
    )
    try:
        await streamer
        # give the engine a moment to deliver its final results
        try:
            await asyncio.wait_for(stopped.wait(), timeout=5.0)
        except asyncio.TimeoutError:
            pass
    finally:
        running.clear()
        await session.stop()

    logger.info("Done: %d batch(es), %d error(s).", len(batches), len(errors))
    return batches


async def main() -> None:
    if len(sys.argv) < 2:
        print(__doc__, file=sys.stderr)
        sys.exit(2)
    if not STT_API_KEY:
        logger.error("STT_API_KEY is not set. Put it in .env and retry.")
        sys.exit(1)

    wav_path = Path(sys.argv[1])
    realtime_factor = float(sys.argv[2]) if len(sys.argv) > 2 else 1.0
    await transcribe_wav(wav_path, realtime_factor=realtime_factor)


if __name__ == "__main__":
    asyncio.run(main())
