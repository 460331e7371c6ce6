"""
数据模型
"""
from .scene import (
    Tone,
    Choice,
    LinearTransition,
    BranchTransition,
    VisitTransition,
    EndingTransition,
    Transition,
    Scene,
    Npc,
)
from .session import Phase, ChoiceRecord, Ending, SessionState, PersistedSession
from .preload import SceneAsset, PreloadProgress

__all__ = [
    # Scene graph
    "Tone",
    "Choice",
    "LinearTransition",
    "BranchTransition",
    "VisitTransition",
    "EndingTransition",
    "Transition",
    "Scene",
    "Npc",
    # Session
    "Phase",
    "ChoiceRecord",
    "Ending",
    "SessionState",
    "PersistedSession",
    # Preloader
    "SceneAsset",
    "PreloadProgress",
]
