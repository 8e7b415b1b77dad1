"""
Batch Accumulator: turning noisy partial/final results into stable batches.

Every ``EngineResult`` is folded into four strings:

    current_batch_text   complete sentences waiting to be emitted
    interim_transcript   volatile words the engine may still revise
    sentence_buffer      trailing unfinished sentence from final results
    last_processed_text  text of the last normal batch (duplicate baseline)

A batch is emitted when complete sentences arrive and the combined text is
not a near-duplicate of the previous batch, or unconditionally when a flush
is forced (shutdown and error paths).
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from logging import getLogger
from typing import Callable, Optional, Tuple

from batch_stt.events import EngineResult
from batch_stt.utils import utc_timestamp
from config import SIMILARITY_THRESHOLD

logger = getLogger(__name__)


# Whitespace that follows sentence-ending punctuation.
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")
_SENTENCE_END = re.compile(r"[.!?]$")


@dataclass(frozen=True)
class Batch:
    text: str
    timestamp: str  # ISO-8601, UTC


def _join(*parts: str) -> str:
    return " ".join(p.strip() for p in parts if p and p.strip())


def split_complete_sentences(text: str) -> Tuple[str, str]:
    """
    Split text into (complete, incomplete).

    Complete is every sentence closed by ``.``, ``!`` or ``?``; incomplete is
    the unterminated tail, or "" when the text ends on a sentence boundary.
    """
    sentences = [s for s in _SENTENCE_BOUNDARY.split(text.strip()) if s]
    incomplete = ""
    if sentences and not _SENTENCE_END.search(sentences[-1]):
        incomplete = sentences.pop()
    return " ".join(sentences), incomplete


def remove_duplicate_segments(text: str) -> str:
    """Drop repeated sentences (case-insensitive); first occurrence wins, order is kept."""
    seen = set()
    unique = []
    for segment in _SENTENCE_BOUNDARY.split(text):
        normalized = segment.strip().lower()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        unique.append(segment.strip())
    return " ".join(unique)


def text_similarity(text1: str, text2: str) -> float:
    """Jaccard similarity of the lower-cased word sets; 0.0 when either side is empty."""
    words1 = set(text1.lower().split())
    words2 = set(text2.lower().split())
    if not words1 or not words2:
        return 0.0
    return len(words1 & words2) / len(words1 | words2)


class BatchAccumulator:

    def __init__(
            self,
            on_batch_complete: Callable[[str, str], None],
            on_live_transcription: Callable[[str], None],
            similarity_threshold: float = SIMILARITY_THRESHOLD,
    ) -> None:
        self._on_batch_complete = on_batch_complete
        self._on_live_transcription = on_live_transcription
        self._similarity_threshold = similarity_threshold

        self.current_batch_text = ""
        self.interim_transcript = ""
        self.sentence_buffer = ""
        self.last_processed_text = ""

    @property
    def live_text(self) -> str:
        return _join(self.sentence_buffer, self.interim_transcript)

    @property
    def has_pending(self) -> bool:
        return bool(_join(self.current_batch_text, self.interim_transcript, self.sentence_buffer))

    def reset(self) -> None:
        self.current_batch_text = ""
        self.interim_transcript = ""
        self.sentence_buffer = ""
        self.last_processed_text = ""

    def handle_result(self, event: EngineResult) -> None:
        """Fold one result event into the accumulation state and publish the live preview."""
        final_parts = []
        interim_parts = []
        for result in event.results[event.result_index:]:
            if result.is_final:
                final_parts.append(result.transcript)
            else:
                interim_parts.append(result.transcript)
        final_transcript = _join(*final_parts)

        # Results from result_index onward replace the previous interim words.
        self.interim_transcript = ""

        if final_transcript:
            # The unfinished sentence carried over continues with this final text.
            text = _join(self.sentence_buffer, final_transcript)
            self.sentence_buffer = ""
            complete, incomplete = split_complete_sentences(text)
            if complete:
                self.current_batch_text = complete
                self.process_batch()
            self.sentence_buffer = incomplete

        self.interim_transcript = _join(*interim_parts)
        self._on_live_transcription(self.live_text)

    def process_batch(self, force: bool = False) -> Optional[Batch]:
        """
        Emit the pending text as a batch if it is new enough, or always when forced.

        Returns the emitted batch, or None when nothing was emitted. A
        suppressed (too similar) batch leaves the accumulation state as is.
        """
        combined = _join(self.current_batch_text, self.interim_transcript, self.sentence_buffer)
        if not combined:
            return None

        combined = remove_duplicate_segments(combined)
        similarity = text_similarity(combined, self.last_processed_text)
        if similarity >= self._similarity_threshold and not force:
            logger.debug("[BATCH] Suppressed near-duplicate batch (similarity %.2f): %s", similarity, combined[:100])
            return None

        batch = Batch(text=combined, timestamp=utc_timestamp())
        logger.info("[BATCH] Processing batch%s: %s", " (forced)" if force else "", combined[:100])
        self._on_batch_complete(batch.text, batch.timestamp)

        # A forced batch is not a duplicate baseline for what follows.
        self.last_processed_text = "" if force else combined
        self.current_batch_text = ""
        self.interim_transcript = ""
        self.sentence_buffer = ""
        self._on_live_transcription("")
        return batch
