"""
静态场景图、跳转规则与故事文本
"""
from .scene_registry import SceneRegistry, DEFAULT_STORY_PATH
from .transition_resolver import (
    Advance,
    VisitOptions,
    Ended,
    Unresolved,
    Resolution,
    TransitionResolver,
)
from .ending_classifier import classify, count_tones

__all__ = [
    "SceneRegistry",
    "DEFAULT_STORY_PATH",
    "Advance",
    "VisitOptions",
    "Ended",
    "Unresolved",
    "Resolution",
    "TransitionResolver",
    "classify",
    "count_tones",
]
