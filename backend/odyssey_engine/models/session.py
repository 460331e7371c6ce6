"""
会话模型 - 可变的会话记录及其持久化子集
"""
from __future__ import annotations

from enum import Enum
from typing import FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from odyssey_engine.models.scene import Choice


class Phase(str, Enum):
    """Session lifecycle phases."""
    BOOT = "BOOT"
    PRELOADING = "PRELOADING"
    SCENE_READY = "SCENE_READY"
    CONNECTING = "CONNECTING"
    SCENE_LOADING = "SCENE_LOADING"
    NARRATIVE = "NARRATIVE"
    CHOICES = "CHOICES"
    ACTING = "ACTING"
    NPC_CHAT = "NPC_CHAT"
    TRANSITIONING = "TRANSITIONING"
    ENDING = "ENDING"
    ERROR = "ERROR"


class ChoiceRecord(BaseModel):
    """One entry of the append-only choice history."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    scene_id: int = Field(alias="sceneId")
    choice_id: str = Field(alias="choiceId")
    text: str = ""
    tone: Optional[str] = None


class Ending(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: str


class SessionState(BaseModel):
    """Immutable snapshot of the session record.

    The container swaps whole snapshots; nothing mutates one in place.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    phase: Phase = Phase.BOOT
    current_scene_id: int = 0
    visited_scenes: FrozenSet[int] = frozenset()
    choice_history: Tuple[ChoiceRecord, ...] = ()
    current_narrative: str = ""
    current_choices: Tuple[Choice, ...] = ()
    volume: float = Field(default=0.7, ge=0.0, le=1.0)
    error: Optional[str] = None
    ending: Optional[Ending] = None

    # Transient chat/UI fields
    npc_chat_open: bool = False
    active_npc_id: Optional[str] = None


class PersistedSession(BaseModel):
    """The reduced subset written to durable storage."""
    model_config = ConfigDict(populate_by_name=True)

    current_scene_id: int = Field(default=0, alias="currentSceneId")
    visited_scenes: List[int] = Field(default_factory=list, alias="visitedScenes")
    choice_history: List[ChoiceRecord] = Field(default_factory=list, alias="choiceHistory")
    volume: float = Field(default=0.7, ge=0.0, le=1.0)

    @classmethod
    def from_state(cls, state: SessionState) -> "PersistedSession":
        return cls(
            current_scene_id=state.current_scene_id,
            visited_scenes=sorted(state.visited_scenes),
            choice_history=list(state.choice_history),
            volume=state.volume,
        )

