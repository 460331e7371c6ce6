"""
Error taxonomy for the session engine.

GenerationError and StorageError are recovered locally (fallback content,
retry, or silently dropped writes). TransitionResolutionError and
StreamChannelError surface to the orchestrator, which moves the session
into the ERROR phase.
"""
from typing import Optional


class OdysseyError(Exception):
    """Base class for all engine errors."""


class GenerationError(OdysseyError):
    """The text/image backend failed (quota, timeout, malformed response)."""

    def __init__(self, message: str, *, model: Optional[str] = None) -> None:
        self.model = model
        super().__init__(message)


class ParseError(GenerationError):
    """A structured response did not match the expected schema."""


class TransitionResolutionError(OdysseyError):
    """No successor scene could be resolved, or the registry is malformed."""

    def __init__(self, message: str, *, scene_id: Optional[int] = None) -> None:
        self.scene_id = scene_id
        super().__init__(message)


class StreamChannelError(OdysseyError):
    """The live stream channel is not usable."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        self.transient = transient
        super().__init__(message)


class StorageError(OdysseyError):
    """Durable storage read/write failed."""


class QuotaExceededError(StorageError):
    """A durable write would exceed the store's capacity."""
