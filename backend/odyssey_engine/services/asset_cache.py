"""
两级锚点图缓存：会话内存字典 + 持久化存储。
"""
from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional

from odyssey_engine.config import settings
from odyssey_engine.errors import StorageError
from odyssey_engine.models.preload import SceneAsset
from odyssey_engine.services.kv_store import KeyValueStore

logger = logging.getLogger(__name__)


class TwoTierAssetCache:
    """Fast tier reads never touch the durable store; hydration is explicit."""

    def __init__(self, store: KeyValueStore, key_prefix: Optional[str] = None) -> None:
        self.store = store
        self.key_prefix = key_prefix if key_prefix is not None else settings.anchor_key_prefix
        self._memory: Dict[int, SceneAsset] = {}

    def _key(self, scene_id: int) -> str:
        return f"{self.key_prefix}{scene_id}"

    def get(self, scene_id: int) -> Optional[SceneAsset]:
        return self._memory.get(scene_id)

    def has(self, scene_id: int) -> bool:
        return scene_id in self._memory

    def hydrate(self, scene_id: int) -> bool:
        """Copy a durable entry into the fast tier. Returns whether one existed."""
        try:
            raw = self.store.get(self._key(scene_id))
        except StorageError as exc:
            logger.warning("durable cache read failed for scene %s: %s", scene_id, exc)
            return False
        if not raw:
            return False
        try:
            asset = SceneAsset.from_storage(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("durable cache entry for scene %s is corrupt, ignoring: %s", scene_id, exc)
            return False
        self._memory[scene_id] = asset
        return True

    def put(self, scene_id: int, asset: SceneAsset) -> None:
        """Write to both tiers; durable failures are dropped."""
        self._memory[scene_id] = asset
        try:
            self.store.set(self._key(scene_id), asset.to_storage())
        except StorageError as exc:
            logger.debug("durable cache write skipped for scene %s: %s", scene_id, exc)

    def clear(self, scene_ids: Iterable[int]) -> None:
        self._memory.clear()
        for scene_id in scene_ids:
            try:
                self.store.remove(self._key(scene_id))
            except StorageError as exc:
                logger.debug("durable cache remove failed for scene %s: %s", scene_id, exc)
