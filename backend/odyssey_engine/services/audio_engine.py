"""
Audio collaborator. All calls are fire-and-forget.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Protocol

logger = logging.getLogger(__name__)


class AudioEngine(Protocol):
    def play_ambient(self, tag: str) -> None: ...

    def crossfade_to(self, tag: str, duration_seconds: float) -> None: ...

    def play_one_shot(self, name: str) -> None: ...

    def set_volume(self, level: float) -> None: ...

    def stop(self) -> None: ...


class SilentAudioEngine:
    """Tracks what would be playing without producing sound."""

    def __init__(self, volume: float = 0.7) -> None:
        self.ambient: Optional[str] = None
        self.volume = volume
        self.one_shots: List[str] = []

    def play_ambient(self, tag: str) -> None:
        self.ambient = tag
        logger.debug("ambient: %s", tag)

    def crossfade_to(self, tag: str, duration_seconds: float) -> None:
        if tag == self.ambient:
            return
        logger.debug("crossfade %s -> %s over %.1fs", self.ambient, tag, duration_seconds)
        self.ambient = tag

    def play_one_shot(self, name: str) -> None:
        self.one_shots.append(name)
        logger.debug("one-shot: %s", name)

    def set_volume(self, level: float) -> None:
        self.volume = min(1.0, max(0.0, level))

    def stop(self) -> None:
        self.ambient = None
