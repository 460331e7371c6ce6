"""
SceneRegistry — static registry of scene descriptors and NPCs.

Loaded once at process start from a story file. Validation happens at load
time so the transition resolver can trust every target id it reads.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from pydantic import ValidationError

from odyssey_engine.errors import TransitionResolutionError
from odyssey_engine.models.scene import Npc, Scene

logger = logging.getLogger(__name__)

DEFAULT_STORY_PATH = Path(__file__).resolve().parents[1] / "data" / "odyssey_story.json"


class SceneRegistry:
    """Read-only scene graph with dense ids 0..N-1."""

    def __init__(
        self,
        scenes: Iterable[Scene],
        npcs: Optional[Dict[str, Npc]] = None,
        title: str = "",
    ) -> None:
        ordered = sorted(scenes, key=lambda scene: scene.id)
        self._scenes: Tuple[Scene, ...] = tuple(ordered)
        self._npcs: Dict[str, Npc] = dict(npcs or {})
        self.title = title
        self._validate()

    # =========================================================================
    # Loading
    # =========================================================================

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SceneRegistry":
        try:
            scenes = [Scene.model_validate(raw) for raw in payload.get("scenes", [])]
            npcs = {
                npc_id: Npc.model_validate(raw)
                for npc_id, raw in (payload.get("npcs") or {}).items()
            }
        except ValidationError as exc:
            raise TransitionResolutionError(f"malformed scene registry: {exc}") from exc
        return cls(scenes, npcs=npcs, title=str(payload.get("title") or ""))

    @classmethod
    def from_file(cls, path: str | Path) -> "SceneRegistry":
        story_path = Path(path)
        with story_path.open("r", encoding="utf-8") as fh:
            payload = json.load(fh)
        registry = cls.from_dict(payload)
        logger.info("scene registry loaded: %s (%d scenes)", story_path.name, len(registry))
        return registry

    @classmethod
    def load_default(cls) -> "SceneRegistry":
        return cls.from_file(DEFAULT_STORY_PATH)

    def _validate(self) -> None:
        if not self._scenes:
            raise TransitionResolutionError("scene registry is empty")

        ids = [scene.id for scene in self._scenes]
        if ids != list(range(len(ids))):
            raise TransitionResolutionError(f"scene ids must be dense 0..N-1, got {ids}")

        known = set(ids)
        for scene in self._scenes:
            for target in self._targets(scene):
                if target not in known:
                    raise TransitionResolutionError(
                        f"scene {scene.id} transitions to unknown scene {target}",
                        scene_id=scene.id,
                    )
            for npc_id in scene.npcs:
                if self._npcs and npc_id not in self._npcs:
                    logger.warning("scene %s references unknown npc %s", scene.id, npc_id)

    @staticmethod
    def _targets(scene: Scene) -> List[int]:
        transition = scene.transition
        if transition.type == "linear":
            return [transition.next]
        if transition.type == "branch":
            return list(transition.options.values())
        if transition.type == "visit":
            return [*transition.pool, transition.then]
        return []

    # =========================================================================
    # Lookup
    # =========================================================================

    def get(self, scene_id: int) -> Optional[Scene]:
        if 0 <= scene_id < len(self._scenes):
            return self._scenes[scene_id]
        return None

    def require(self, scene_id: int) -> Scene:
        scene = self.get(scene_id)
        if scene is None:
            raise TransitionResolutionError(f"scene {scene_id} not found in registry", scene_id=scene_id)
        return scene

    def get_npc(self, npc_id: str) -> Optional[Npc]:
        return self._npcs.get(npc_id)

    @property
    def npcs(self) -> Dict[str, Npc]:
        return dict(self._npcs)

    @property
    def scenes(self) -> Tuple[Scene, ...]:
        return self._scenes

    @property
    def ids(self) -> List[int]:
        return [scene.id for scene in self._scenes]

    def branch_destinations(self, scene_id: int) -> Dict[str, int]:
        """Choice-id → scene-id map of a branching scene (empty otherwise)."""
        scene = self.get(scene_id)
        if scene is None or scene.transition.type != "branch":
            return {}
        return dict(scene.transition.options)

    def __len__(self) -> int:
        return len(self._scenes)

    def __iter__(self) -> Iterator[Scene]:
        return iter(self._scenes)

    def __contains__(self, scene_id: object) -> bool:
        return isinstance(scene_id, int) and self.get(scene_id) is not None
