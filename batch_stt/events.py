from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Tuple, Union


@dataclass(frozen=True)
class RecognitionAlternative:
    transcript: str
    confidence: float = 1.0


@dataclass(frozen=True)
class RecognitionResult:
    """
    One recognised segment.

    Attributes:
        is_final: True once the engine considers the wording settled.
            Interim results may still be revised by later events.
        alternatives: Candidate transcripts, best first. Only the first
            one is used.
    """
    is_final: bool
    alternatives: Tuple[RecognitionAlternative, ...]

    @property
    def transcript(self) -> str:
        return self.alternatives[0].transcript if self.alternatives else ""


# ---------------------------------------------------------------------------
# Engine events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EngineStarted:
    """The engine acknowledged start and is listening."""


@dataclass(frozen=True)
class EngineResult:
    """
    Results changed.

    ``results`` is the engine's cumulative result list for the current
    instance; entries before ``result_index`` are unchanged since the
    previous event.
    """
    result_index: int
    results: Tuple[RecognitionResult, ...]


@dataclass(frozen=True)
class EngineError:
    """The engine failed; ``error`` is the raw kind (``network``, ``no-speech``, ...)."""
    error: str
    message: str = ""


@dataclass(frozen=True)
class EngineEnded:
    """The engine instance finished and will not emit anything else."""


@dataclass(frozen=True)
class AudioStarted:
    pass


@dataclass(frozen=True)
class AudioEnded:
    pass


@dataclass(frozen=True)
class NoMatch:
    """Audio was heard but nothing could be recognised."""


EngineEvent = Union[EngineStarted, EngineResult, EngineError, EngineEnded, AudioStarted, AudioEnded, NoMatch]


@dataclass
class ResultTracker:
    """
    Builds cumulative ``EngineResult`` events from a flat stream of segments.

    A trailing interim result is replaced by whatever arrives next; a final
    result is kept and the next segment is appended after it.
    """
    _results: List[RecognitionResult] = field(default_factory=list)

    def push(self, text: str, is_final: bool, confidence: float = 1.0) -> EngineResult:
        result = RecognitionResult(is_final=is_final, alternatives=(RecognitionAlternative(text, confidence),))
        if self._results and not self._results[-1].is_final:
            index = len(self._results) - 1
            self._results[index] = result
        else:
            index = len(self._results)
            self._results.append(result)
        return EngineResult(result_index=index, results=tuple(self._results))
