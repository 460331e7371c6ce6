"""
锚点图预加载器

与会话流程相互独立，分三步：
1. 先从持久层恢复已有的锚点图
2. 其余场景按优先级分层排队
3. 有界并发生成，单个场景失败时指数退避重试

部分缺失是正常结果：重试耗尽的场景只是不在缓存里。
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

from odyssey_engine.config import settings
from odyssey_engine.models.preload import PreloadProgress, SceneAsset
from odyssey_engine.services.asset_cache import TwoTierAssetCache
from odyssey_engine.services.worker_pool import BoundedWorkerPool
from odyssey_engine.world.scene_registry import SceneRegistry
from odyssey_engine.world.story_bible import build_image_prompt

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[PreloadProgress], None]
Sleep = Callable[[float], Awaitable[None]]


class ImageGenerator(Protocol):
    async def generate_image(self, prompt: str) -> SceneAsset: ...


class AnchorPreloader:
    """按优先级、限并发、带重试的锚点图预加载器"""

    def __init__(
        self,
        registry: SceneRegistry,
        generator: ImageGenerator,
        cache: TwoTierAssetCache,
        *,
        max_concurrency: Optional[int] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        priority_tiers: Optional[Sequence[Sequence[int]]] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.generator = generator
        self.cache = cache
        self.max_concurrency = settings.preload_max_concurrency if max_concurrency is None else max_concurrency
        self.max_retries = settings.preload_max_retries if max_retries is None else max_retries
        self.backoff_base = settings.preload_backoff_base_seconds if backoff_base is None else backoff_base
        self.priority_tiers = [
            list(tier) for tier in (priority_tiers if priority_tiers is not None else settings.preload_priority_tiers)
        ]
        self._sleep = sleep

        self._loaded = 0
        self._total = len(registry)
        self.attempts = 0
        self.failed: List[int] = []
        self._run: Optional[asyncio.Future] = None
        self._listeners: List[ProgressCallback] = []

    # =========================================================================
    # Public API
    # =========================================================================

    async def preload_all(self, on_progress: Optional[ProgressCallback] = None) -> None:
        """
        预加载全部场景锚点图。

        同一时间只有一轮预加载在跑：运行中再次调用会加入当前这一轮，
        先收到一次当前进度，之后与首个调用者一起接收进度回调，
        不会重置计数，也不会重复生成。

        Args:
            on_progress: 每次进度变化时调用，抛出的异常只记录日志。
        """
        if on_progress is not None:
            self._listeners.append(on_progress)
        try:
            run = self._run
            if run is None or run.done():
                run = asyncio.ensure_future(self._preload_run())
                self._run = run
            elif on_progress is not None:
                self._notify(on_progress)
            await asyncio.shield(run)
        finally:
            if on_progress is not None and on_progress in self._listeners:
                self._listeners.remove(on_progress)

    async def _preload_run(self) -> None:
        self._loaded = 0
        self._total = len(self.registry)
        self.failed = []

        # 第一阶段：持久层
        for scene_id in self.registry.ids:
            if self.cache.has(scene_id) or self.cache.hydrate(scene_id):
                self._loaded += 1
        self._report()

        if self._loaded >= self._total:
            logger.info("all %d anchors restored from cache", self._total)
            return

        # 第二阶段：按优先级排队
        queue = [scene_id for scene_id in self.build_queue() if not self.cache.has(scene_id)]
        logger.info(
            "preloading %d anchors (cached=%d, workers=%d)",
            len(queue),
            self._loaded,
            min(self.max_concurrency, len(queue)),
        )

        # 第三阶段：有界并发
        async def _handle(scene_id: int) -> None:
            if await self._generate_with_retry(scene_id):
                self._loaded += 1
            else:
                self.failed.append(scene_id)
            self._report()

        await BoundedWorkerPool(self.max_concurrency, _handle).run(queue)
        logger.info(
            "preload finished: %d/%d loaded, %d failed",
            self._loaded,
            self._total,
            len(self.failed),
        )

    def build_queue(self) -> List[int]:
        """Flatten priority tiers; unlisted scenes follow in id order."""
        known = set(self.registry.ids)
        ordered: List[int] = []
        seen = set()
        for tier in self.priority_tiers:
            for scene_id in tier:
                if scene_id in known and scene_id not in seen:
                    ordered.append(scene_id)
                    seen.add(scene_id)
        ordered.extend(scene_id for scene_id in self.registry.ids if scene_id not in seen)
        return ordered

    def get_asset(self, scene_id: int) -> Optional[SceneAsset]:
        return self.cache.get(scene_id)

    def is_ready(self, scene_id: int) -> bool:
        return self.cache.has(scene_id)

    def get_progress(self) -> PreloadProgress:
        return PreloadProgress.of(self._loaded, self._total)

    def clear_cache(self) -> None:
        self.cache.clear(self.registry.ids)
        self._loaded = 0

    # =========================================================================
    # Internals
    # =========================================================================

    async def _generate_with_retry(self, scene_id: int) -> bool:
        scene = self.registry.get(scene_id)
        if scene is None:
            return False

        prompt = build_image_prompt(scene.anchor_image_prompt, scene.camera)
        for attempt in range(self.max_retries):
            self.attempts += 1
            try:
                asset = await self.generator.generate_image(prompt)
            except Exception as exc:
                if attempt < self.max_retries - 1:
                    delay = self.backoff_base * (2 ** attempt)
                    logger.debug(
                        "anchor %s attempt %d failed (%s), retrying in %.2fs",
                        scene_id,
                        attempt + 1,
                        exc,
                        delay,
                    )
                    await self._sleep(delay)
                else:
                    logger.warning(
                        "failed to generate anchor for scene %s after %d attempts: %s",
                        scene_id,
                        self.max_retries,
                        exc,
                    )
                continue

            self.cache.put(scene_id, asset)
            return True
        return False

    def _report(self) -> None:
        for listener in list(self._listeners):
            self._notify(listener)

    def _notify(self, listener: ProgressCallback) -> None:
        try:
            listener(self.get_progress())
        except Exception:
            logger.exception("preload progress callback failed")
