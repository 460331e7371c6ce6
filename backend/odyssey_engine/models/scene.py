"""
场景模型 - 静态叙事图

场景在启动时从故事文件加载一次，之后不再修改。
"""
from __future__ import annotations

from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Tone(str, Enum):
    """Categorical tag attached to a player choice."""
    CAUTIOUS = "cautious"
    BOLD = "bold"
    CREATIVE = "creative"


class Choice(BaseModel):
    """A selectable option presented to the player."""
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    id: str = Field(min_length=1)
    text: str = Field(min_length=1)
    tone: Tone


# =============================================================================
# Transitions
# =============================================================================


class LinearTransition(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["linear"] = "linear"
    next: int


class BranchTransition(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["branch"] = "branch"
    options: Dict[str, int]

    @field_validator("options")
    @classmethod
    def _non_empty(cls, value: Dict[str, int]) -> Dict[str, int]:
        if not value:
            raise ValueError("branch transition needs at least one option")
        return value


class VisitTransition(BaseModel):
    """Explore any subset of `pool`; `then` unlocks after `min_visits`."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: Literal["visit"] = "visit"
    pool: List[int]
    min_visits: int = Field(alias="minVisits", ge=0)
    then: int

    @model_validator(mode="after")
    def _check_pool(self) -> "VisitTransition":
        if len(set(self.pool)) != len(self.pool):
            raise ValueError(f"visit pool has duplicates: {self.pool}")
        if self.min_visits > len(self.pool):
            raise ValueError(
                f"min_visits={self.min_visits} exceeds pool size {len(self.pool)}"
            )
        if self.then in self.pool:
            raise ValueError(f"visit target {self.then} must not be part of the pool")
        return self


class EndingTransition(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["ending"] = "ending"


Transition = Annotated[
    Union[LinearTransition, BranchTransition, VisitTransition, EndingTransition],
    Field(discriminator="type"),
]


# =============================================================================
# Scene / NPC
# =============================================================================


class Scene(BaseModel):
    """A node in the narrative graph."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: int = Field(ge=0)
    name: str
    subtitle: str = ""
    anchor_image_prompt: str = Field(default="", alias="anchorImagePrompt")
    stream_context: str = Field(default="", alias="streamContext")
    narrative_context: str = Field(default="", alias="narrativeContext")
    choice_context: str = Field(default="", alias="choiceContext")
    camera: str = "ESTABLISHING"
    npcs: List[str] = Field(default_factory=list)
    audio_type: str = Field(default="space", alias="audioType")
    fallback_choices: Optional[List[Choice]] = Field(default=None, alias="fallbackChoices")
    transition: Transition

    @field_validator("fallback_choices")
    @classmethod
    def _three_choices(cls, value: Optional[List[Choice]]) -> Optional[List[Choice]]:
        if value is None:
            return value
        if len(value) != 3:
            raise ValueError(f"fallback_choices needs exactly 3 entries, got {len(value)}")
        ids = [choice.id for choice in value]
        if len(set(ids)) != len(ids):
            raise ValueError(f"fallback choice ids must be unique: {ids}")
        return value

    @property
    def is_terminal(self) -> bool:
        return self.transition.type == "ending"


class Npc(BaseModel):
    """A character the player can talk to."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    name: str
    role: str = ""
    location: str = ""
    appearance: str = ""
    personality: str = ""
    greeting: str = ""
    scene_id: Optional[int] = Field(default=None, alias="sceneId")
