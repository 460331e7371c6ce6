"""SessionStateContainer — the single source of truth for one session.

Every read goes through ``get_state()`` (a frozen snapshot) and every write
through ``set_state()``, which notifies subscribers synchronously with
``(new_snapshot, previous_snapshot)``.

One container per session, passed explicitly to whoever needs it; there is
no module-level instance.

Re-entrancy: a subscriber may call ``set_state`` from inside its own
notification, but it is the subscriber's job not to recurse without bound.

Usage::

    container = SessionStateContainer(store, scene_ids=registry.ids)
    unsubscribe = container.subscribe(lambda new, old: ...)
    container.set_state(phase=Phase.PRELOADING)
    container.save()
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Collection, Dict, List, Optional, Tuple

from pydantic import ValidationError

from odyssey_engine.config import settings
from odyssey_engine.errors import StorageError
from odyssey_engine.models.scene import Choice
from odyssey_engine.models.session import (
    ChoiceRecord,
    Ending,
    PersistedSession,
    Phase,
    SessionState,
)
from odyssey_engine.services.kv_store import KeyValueStore
from odyssey_engine.world.ending_classifier import classify

logger = logging.getLogger(__name__)

Listener = Callable[[SessionState, SessionState], None]


class SessionStateContainer:
    """Reactive session record with subscribe/notify and persistence."""

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        *,
        storage_key: Optional[str] = None,
        scene_ids: Optional[Collection[int]] = None,
        default_volume: Optional[float] = None,
    ) -> None:
        self._store = store
        self.storage_key = storage_key or settings.session_storage_key
        self._scene_ids = frozenset(scene_ids) if scene_ids is not None else None
        self._default_volume = settings.default_volume if default_volume is None else default_volume
        self._state = self._initial_state()
        self._listeners: List[Tuple[int, Listener]] = []
        self._next_token = 0

    def _initial_state(self) -> SessionState:
        return SessionState(volume=self._default_volume)

    # =========================================================================
    # Observation
    # =========================================================================

    def get_state(self) -> SessionState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        token = self._next_token
        self._next_token += 1
        self._listeners.append((token, listener))

        def _unsubscribe() -> None:
            self._listeners = [(t, fn) for t, fn in self._listeners if t != token]

        return _unsubscribe

    def _notify(self, new: SessionState, previous: SessionState) -> None:
        for _, listener in list(self._listeners):
            try:
                listener(new, previous)
            except Exception:
                logger.exception("session state subscriber failed")

    # =========================================================================
    # Mutation
    # =========================================================================

    def set_state(self, **partial: Any) -> SessionState:
        """
        合并字段并同步通知订阅者

        Args:
            **partial: 要更新的会话字段

        Returns:
            SessionState: 更新后的快照

        Raises:
            ValueError: 未知字段、非法值、未注册的 current_scene_id，
                或 visited_scenes 丢失了已访问场景
        """
        previous = self._state
        try:
            candidate = SessionState.model_validate({**dict(previous), **partial})
        except ValidationError as exc:
            raise ValueError(f"invalid session state update: {exc}") from exc

        if (
            self._scene_ids is not None
            and "current_scene_id" in partial
            and candidate.current_scene_id not in self._scene_ids
        ):
            raise ValueError(f"scene {candidate.current_scene_id} is not registered")
        if not candidate.visited_scenes >= previous.visited_scenes:
            raise ValueError("visited_scenes may only grow within a session")

        self._state = candidate
        self._notify(candidate, previous)
        return candidate

    def reset(self) -> SessionState:
        """恢复默认记录并删除存档"""
        previous = self._state
        self._state = self._initial_state()
        if self._store is not None:
            try:
                self._store.remove(self.storage_key)
            except StorageError as exc:
                logger.warning("failed to clear saved session: %s", exc)
        self._notify(self._state, previous)
        return self._state

    def mark_visited(self, scene_id: int) -> SessionState:
        if scene_id in self._state.visited_scenes:
            return self._state
        return self.set_state(visited_scenes=self._state.visited_scenes | {scene_id})

    def record_choice(self, scene_id: int, choice: Choice) -> SessionState:
        """Append to the choice history and mark the scene visited."""
        record = ChoiceRecord(
            scene_id=scene_id,
            choice_id=choice.id,
            text=choice.text,
            tone=choice.tone,
        )
        state = self._state
        return self.set_state(
            choice_history=(*state.choice_history, record),
            visited_scenes=state.visited_scenes | {scene_id},
        )

    def fail(self, message: str) -> SessionState:
        return self.set_state(phase=Phase.ERROR, error=message)

    def compute_ending(self) -> Ending:
        """Classify the playthrough once; later calls return the same ending."""
        existing = self._state.ending
        if existing is not None:
            if self._state.phase != Phase.ENDING:
                self.set_state(phase=Phase.ENDING)
            return existing
        ending = classify(self._state.choice_history)
        self.set_state(ending=ending, phase=Phase.ENDING)
        return ending

    # =========================================================================
    # Persistence
    # =========================================================================

    def save(self) -> bool:
        """保存持久化子集，从不抛异常"""
        if self._store is None:
            return False
        try:
            payload = PersistedSession.from_state(self._state).model_dump(mode="json", by_alias=True)
            self._store.set(self.storage_key, json.dumps(payload))
            return True
        except StorageError as exc:
            logger.warning("failed to save session: %s", exc)
        except Exception:
            logger.exception("unexpected error saving session")
        return False

    def load(self) -> bool:
        """
        读取存档

        Returns:
            bool: 是否找到并应用了存档；缺失、损坏或场景未注册时为 False
        """
        if self._store is None:
            return False
        try:
            raw = self._store.get(self.storage_key)
            if not raw:
                return False
            saved = PersistedSession.model_validate(json.loads(raw))
            if self._scene_ids is not None and saved.current_scene_id not in self._scene_ids:
                logger.warning("saved scene %s is not registered, ignoring save", saved.current_scene_id)
                return False
            self._replace_progress(saved)
            return True
        except (StorageError, ValueError) as exc:
            logger.warning("failed to load saved session: %s", exc)
        except Exception:
            logger.exception("unexpected error loading session")
        return False

    def _replace_progress(self, saved: PersistedSession) -> None:
        # A restore replaces progress wholesale, so it skips the growth check
        previous = self._state
        updates: Dict[str, Any] = {
            "current_scene_id": saved.current_scene_id,
            "visited_scenes": frozenset(saved.visited_scenes),
            "choice_history": tuple(saved.choice_history),
            "volume": saved.volume,
        }
        self._state = SessionState.model_validate({**dict(previous), **updates})
        self._notify(self._state, previous)
