"""
Transition resolver — computes successor scene(s) from the static registry.

Outcomes are tagged instead of overloading ``None``:

* ``Advance``       — a single successor.
* ``VisitOptions``  — candidates from a visit pool; callers move to
                      ``advance_to`` (the last element) unless the player
                      explicitly picks another candidate.
* ``Ended``         — the scene is terminal.
* ``Unresolved``    — resolution failed (unknown choice id, unknown scene).
                      This is an error, never an ending.

Visit-pool rule: while fewer than ``min_visits`` pool scenes have been
visited, only unvisited pool scenes are offered. Once the minimum is met,
``then`` is appended after the remaining pool scenes, so advancing to the
last element moves on while the optional scenes stay selectable.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Collection, List, Optional, Tuple, Union

from odyssey_engine.errors import TransitionResolutionError
from odyssey_engine.world.scene_registry import SceneRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Advance:
    scene_id: int

    @property
    def advance_to(self) -> int:
        return self.scene_id


@dataclass(frozen=True)
class VisitOptions:
    scene_ids: Tuple[int, ...]

    @property
    def advance_to(self) -> int:
        return self.scene_ids[-1]


@dataclass(frozen=True)
class Ended:
    scene_id: int


@dataclass(frozen=True)
class Unresolved:
    scene_id: int
    reason: str
    choice_id: Optional[str] = None


Resolution = Union[Advance, VisitOptions, Ended, Unresolved]


class TransitionResolver:
    """Pure with respect to the registry; ``visited`` is the only moving input."""

    def __init__(self, registry: SceneRegistry) -> None:
        self.registry = registry

    def resolve_next(
        self,
        current_scene_id: int,
        choice_id: Optional[str] = None,
        visited: Collection[int] = (),
    ) -> Resolution:
        scene = self.registry.get(current_scene_id)
        if scene is None:
            return Unresolved(current_scene_id, f"scene {current_scene_id} is not registered", choice_id)

        transition = scene.transition

        if transition.type == "linear":
            return Advance(transition.next)

        if transition.type == "branch":
            if choice_id is None or choice_id not in transition.options:
                return Unresolved(
                    current_scene_id,
                    f"choice {choice_id!r} is not a branch option of scene {current_scene_id}",
                    choice_id,
                )
            return Advance(transition.options[choice_id])

        if transition.type == "visit":
            return VisitOptions(
                tuple(self._visit_candidates(transition.pool, transition.min_visits, transition.then, visited))
            )

        if transition.type == "ending":
            return Ended(current_scene_id)

        return Unresolved(current_scene_id, f"unknown transition type {transition.type!r}", choice_id)

    @staticmethod
    def _visit_candidates(
        pool: List[int],
        min_visits: int,
        then: int,
        visited: Collection[int],
    ) -> List[int]:
        visited_set = set(visited)
        remaining = [scene_id for scene_id in pool if scene_id not in visited_set]
        visited_in_pool = len(pool) - len(remaining)

        if visited_in_pool < min_visits:
            return remaining
        return [*remaining, then]

    def require_next(
        self,
        current_scene_id: int,
        choice_id: Optional[str] = None,
        visited: Collection[int] = (),
    ) -> Resolution:
        """Like ``resolve_next`` but raises on ``Unresolved``."""
        outcome = self.resolve_next(current_scene_id, choice_id, visited)
        if isinstance(outcome, Unresolved):
            raise TransitionResolutionError(outcome.reason, scene_id=outcome.scene_id)
        return outcome


def as_legacy(outcome: Resolution) -> Union[int, List[int], None]:
    """Flatten an outcome into the ``int | list[int] | None`` shape."""
    if isinstance(outcome, Advance):
        return outcome.scene_id
    if isinstance(outcome, VisitOptions):
        return list(outcome.scene_ids)
    return None
