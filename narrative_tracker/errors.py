"""Exception hierarchy for the extraction pipeline."""

from __future__ import annotations


class TrackerError(Exception):
    """Base class for every error raised by the tracker."""


class ConfigurationError(TrackerError):
    """No extraction endpoint is configured."""


class ExtractionAborted(TrackerError):
    """The shared cancellation token fired while a stage was running.

    Not a failure: callers suppress user-visible error reporting for it.
    """


class GeneratorError(TrackerError):
    """The generator failed (network or provider error)."""


class ExtractionParseError(TrackerError):
    """A generator answer could not be turned into the stage's structure."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"{stage}: {message}")
        self.stage = stage


class ReconciliationError(TrackerError):
    """A later message's stored state could not be rewritten."""

    def __init__(self, message_id: int, cause: Exception):
        super().__init__(f"message {message_id}: {cause}")
        self.message_id = message_id
        self.cause = cause


class ExtractionInProgress(TrackerError):
    """An extraction for the same message is already running."""

    def __init__(self, chat_id: str, message_id: int):
        super().__init__(f"Extraction already running for chat {chat_id} message {message_id}")
        self.chat_id = chat_id
        self.message_id = message_id


class CorruptNarrativeState(TrackerError):
    """The narrative state stored on the chat does not validate.

    Raised instead of starting over so the stored chapters and relationships
    are never overwritten with a blank state.
    """
