"""
会话运行时
"""
from .session_state import SessionStateContainer
from .game_session import GameSession

__all__ = ["SessionStateContainer", "GameSession"]
