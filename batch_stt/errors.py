"""
Session error taxonomy and the user-facing messages for each failure.

Every error a caller sees arrives as a plain string through
``SessionConfig.on_error``. Internally, failures that abort ``start()`` are
raised as ``SessionError`` and converted at the public boundary.
"""

from __future__ import annotations

from enum import Enum


class SessionErrorKind(str, Enum):
    UNSUPPORTED_ENVIRONMENT = "unsupported-environment"
    PERMISSION_DENIED = "permission-denied"
    NO_MICROPHONE = "no-microphone"
    NO_NETWORK = "no-network"
    NO_SPEECH_TIMEOUT = "no-speech-timeout"
    RECOVERABLE_ENGINE_ERROR = "recoverable-engine-error"
    RESTART_EXHAUSTED = "restart-exhausted"
    UNKNOWN_ENGINE_ERROR = "unknown-engine-error"


# Raw error kinds reported by recognition engines.
ENGINE_NOT_ALLOWED = "not-allowed"
ENGINE_AUDIO_CAPTURE = "audio-capture"
ENGINE_NO_SPEECH = "no-speech"
ENGINE_ABORTED = "aborted"
ENGINE_NETWORK = "network"


MSG_NOT_SUPPORTED = "Speech recognition is not supported in this environment"
MSG_INSECURE_CONTEXT = "Speech recognition requires a secure context (HTTPS/WSS)"
MSG_START_NO_NETWORK = "No internet connection detected. Please check your network connection."
MSG_START_NO_MICROPHONE = "Microphone access is required. Please allow microphone access and try again."
MSG_START_FAILED = "Failed to start speech recognition: {reason}"

MSG_PERMISSION_DENIED = (
    "Microphone access denied. Please allow microphone access in your settings and try again."
)
MSG_NO_MICROPHONE = (
    "No microphone detected. Please ensure your microphone is properly connected and try again."
)
MSG_NO_SPEECH = "No speech detected. Please try speaking again."
MSG_SILENCE_TIMEOUT = "No speech detected for an extended period. Recording stopped."
MSG_NO_NETWORK = (
    "No internet connection detected. Please check your network connection and try again."
)
MSG_UNSTABLE_CONNECTION = "Unable to establish a stable connection. Please try again."
MSG_NETWORK_RECOVERY_FAILED = "Failed to recover from network error. Please try again."
MSG_RESTART_EXHAUSTED = "Speech recognition kept disconnecting and was stopped. Please try again."
MSG_RESTART_FAILED = "Failed to restart speech recognition. Please try again."
MSG_UNKNOWN_ENGINE_ERROR = "Speech recognition error: {error}. Please try again."


class SessionError(RuntimeError):
    """A session failure with its taxonomy kind and a human-readable message."""

    def __init__(self, kind: SessionErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
