"""
Odyssey 会话编排引擎
"""
from .runtime import GameSession, SessionStateContainer
from .world import SceneRegistry, TransitionResolver, classify

__version__ = "0.1.0"

__all__ = [
    "GameSession",
    "SessionStateContainer",
    "SceneRegistry",
    "TransitionResolver",
    "classify",
]
