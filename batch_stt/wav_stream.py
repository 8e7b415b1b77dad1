from __future__ import annotations

import asyncio
import wave
from dataclasses import dataclass
from logging import getLogger
from pathlib import Path
from typing import Iterator, Optional

from config import AUDIO_CHANNELS, AUDIO_SAMPLE_RATE

logger = getLogger(__name__)


def make_silence_chunk(duration_s: float, sample_rate: int = AUDIO_SAMPLE_RATE, sample_width_bytes: int = 2) -> bytes:
    return b"\x00" * sample_width_bytes * int(sample_rate * duration_s)


@dataclass(frozen=True)
class WavFormat:
    """
    Format of a WAV file:
    - channels: 1 = mono, 2 = stereo.
    - sample_width_bytes: bytes per sample (2 = 16-bit).
    - sample_rate: samples per second in Hz.
    - comptype: 'NONE' for uncompressed PCM.
    """
    channels: int
    sample_width_bytes: int
    sample_rate: int
    n_frames: int
    comptype: str

    @property
    def duration_s(self) -> float:
        return self.n_frames / self.sample_rate if self.sample_rate else 0.0


def inspect_wav(path: Path) -> WavFormat:
    with wave.open(str(path.resolve()), "rb") as wf:
        return WavFormat(channels=wf.getnchannels(), sample_width_bytes=wf.getsampwidth(),
                         sample_rate=wf.getframerate(), n_frames=wf.getnframes(), comptype=wf.getcomptype())


def iter_wav_pcm_chunks(path: Path, *, chunk_ms: int, expected_sample_rate: int = AUDIO_SAMPLE_RATE,
                        expected_channels: int = AUDIO_CHANNELS, expected_sample_width_bytes: int = 2) -> Iterator[bytes]:
    """
    Yield raw PCM frames from an uncompressed WAV file in chunks of ``chunk_ms``.

    Raises ValueError when the file does not match the expected format.
    """
    fmt = inspect_wav(path)
    logger.debug("[WAV] file: %s; format: %r", path, fmt)

    if fmt.comptype != "NONE":
        raise ValueError(f"{path.name}: compressed WAV not supported (comptype={fmt.comptype})")
    if fmt.sample_rate != expected_sample_rate:
        raise ValueError(f"{path.name}: sample_rate={fmt.sample_rate} expected={expected_sample_rate}")
    if fmt.channels != expected_channels:
        raise ValueError(f"{path.name}: channels={fmt.channels} expected={expected_channels}")
    if fmt.sample_width_bytes != expected_sample_width_bytes:
        raise ValueError(
            f"{path.name}: sample_width_bytes={fmt.sample_width_bytes} expected={expected_sample_width_bytes}")

    frames_per_chunk = int(expected_sample_rate * (chunk_ms / 1000.0))
    if frames_per_chunk <= 0:
        raise ValueError("chunk_ms too small")

    with wave.open(str(path), "rb") as wf:
        while True:
            data = wf.readframes(frames_per_chunk)
            if not data:
                break
            yield data


async def stream_wav_to_queue(path: Path, audio_queue: asyncio.Queue, chunk_ms: int, *,
                              realtime_factor: float = 1.0, silence_s: float = 1.0,
                              running: Optional[asyncio.Event] = None) -> int:
    """
    Feed a WAV file into ``audio_queue`` with real-time pacing, then push None.

    Silence is added after the audio so the engine can finalize the last
    segment. A cleared ``running`` event stops streaming early.

    Returns the number of chunks queued (silence included).
    """
    chunk_s = chunk_ms / 1000.0
    sent = 0
    for chunk in iter_wav_pcm_chunks(path, chunk_ms=chunk_ms):
        if running is not None and not running.is_set():
            logger.info("[WAV] streaming interrupted after %d chunks.", sent)
            break
        await audio_queue.put(chunk)
        sent += 1
        if sent % 20 == 0:
            logger.debug("[WAV] sent chunk %d.", sent)
        if realtime_factor > 0:
            await asyncio.sleep(chunk_s * realtime_factor)

    padded = 0.0
    while padded < silence_s:
        await audio_queue.put(make_silence_chunk(chunk_s))
        sent += 1
        padded += chunk_s
        if realtime_factor > 0:
            await asyncio.sleep(chunk_s * realtime_factor)

    logger.info("[WAV] streaming done, sent %d chunks.", sent)
    await audio_queue.put(None)
    return sent
