"""
GameSession - 单次游玩的流程编排

围绕 ``SessionStateContainer`` 组装预加载器、视频流、生成服务、音频与 NPC 对话。
公开操作从不抛异常：所有失败都写入会话记录（``error`` + ``Phase.ERROR``），
``restart()`` 是离开错误状态的唯一方式。

流程::

    start() -> PRELOADING -> SCENE_READY
    begin() -> CONNECTING -> load_scene(0)
    load_scene() -> SCENE_LOADING -> NARRATIVE
    narrative_complete() -> CHOICES
    choose()/advance() -> ACTING/TRANSITIONING -> load_scene(next) ... -> ENDING
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from odyssey_engine.config import settings
from odyssey_engine.errors import GenerationError, StreamChannelError
from odyssey_engine.models.preload import PreloadProgress, SceneAsset
from odyssey_engine.models.scene import Choice, Scene
from odyssey_engine.models.session import Phase, SessionState
from odyssey_engine.runtime.session_state import Listener, SessionStateContainer
from odyssey_engine.services.asset_cache import TwoTierAssetCache
from odyssey_engine.services.audio_engine import AudioEngine, SilentAudioEngine
from odyssey_engine.services.gemini_service import SceneGenerator
from odyssey_engine.services.kv_store import InMemoryKeyValueStore, KeyValueStore
from odyssey_engine.services.npc_chat import NpcChatService
from odyssey_engine.services.preloader import AnchorPreloader
from odyssey_engine.services.stream_session import LiveStreamSession, OfflineStreamClient
from odyssey_engine.world.scene_registry import SceneRegistry
from odyssey_engine.world.story_bible import build_action_prompt, build_stream_prompt
from odyssey_engine.world.transition_resolver import (
    Advance,
    Ended,
    TransitionResolver,
    Unresolved,
    VisitOptions,
)

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]
ProgressListener = Callable[[PreloadProgress], None]

# Phases from which begin() is accepted
_STARTABLE = {Phase.BOOT, Phase.PRELOADING, Phase.SCENE_READY}


class GameSession:
    """游戏会话：状态容器 + 驱动它的各个协作服务"""

    def __init__(
        self,
        registry: SceneRegistry,
        generator: SceneGenerator,
        *,
        store: Optional[KeyValueStore] = None,
        stream: Optional[LiveStreamSession] = None,
        audio: Optional[AudioEngine] = None,
        preloader: Optional[AnchorPreloader] = None,
        on_change: Optional[Listener] = None,
        on_progress: Optional[ProgressListener] = None,
        transition_pause: Optional[float] = None,
        crossfade_seconds: Optional[float] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.generator = generator
        self.store = store if store is not None else InMemoryKeyValueStore()
        self.stream = stream or LiveStreamSession(OfflineStreamClient)
        self.audio = audio or SilentAudioEngine()
        self.preloader = preloader or AnchorPreloader(
            registry, generator, TwoTierAssetCache(self.store)
        )
        self.resolver = TransitionResolver(registry)
        self.container = SessionStateContainer(self.store, scene_ids=registry.ids)
        self.npc_chat = NpcChatService(
            self.container, registry, generator, stream=self.stream, audio=self.audio
        )

        self.transition_pause = (
            settings.transition_pause_seconds if transition_pause is None else transition_pause
        )
        self.crossfade_seconds = settings.crossfade_seconds if crossfade_seconds is None else crossfade_seconds
        self._sleep = sleep
        self._on_change = on_change
        self._on_progress = on_progress

        self.progress = PreloadProgress.of(0, len(registry))
        self._preload_task: Optional[asyncio.Task] = None
        self._preload_generation = 0
        self._unsubscribers: List[Callable[[], None]] = []
        self._closed = False

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def state(self) -> SessionState:
        return self.container.get_state()

    @property
    def is_closed(self) -> bool:
        return self._closed

    def current_scene(self) -> Optional[Scene]:
        return self.registry.get(self.state.current_scene_id)

    def current_anchor(self) -> Optional[SceneAsset]:
        return self.preloader.get_asset(self.state.current_scene_id)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        unsubscribe = self.container.subscribe(listener)
        self._unsubscribers.append(unsubscribe)
        return unsubscribe

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """进入 PRELOADING，并在后台预加载锚点图"""
        if self._closed or self._preload_task is not None:
            return
        if self._on_change is not None and not self._unsubscribers:
            self.subscribe(self._on_change)

        self.container.set_state(phase=Phase.PRELOADING)
        self._preload_generation += 1
        self._preload_task = asyncio.create_task(self._run_preload(self._preload_generation))

    async def _run_preload(self, generation: int) -> None:
        def _progress(progress: PreloadProgress) -> None:
            self._handle_progress(generation, progress)

        try:
            await self.preloader.preload_all(_progress)
        except Exception as exc:
            logger.exception("preload failed")
            if self._is_current(generation):
                self._fail(f"Preload failed: {exc}")
            return
        if self._is_current(generation):
            self.progress = self.preloader.get_progress()

    def _is_current(self, generation: int) -> bool:
        return not self._closed and generation == self._preload_generation

    def _handle_progress(self, generation: int, progress: PreloadProgress) -> None:
        if not self._is_current(generation):
            return
        self.progress = progress
        if self._on_progress is not None:
            try:
                self._on_progress(progress)
            except Exception:
                logger.exception("progress listener failed")
        if progress.loaded >= 1 and self.state.phase == Phase.PRELOADING:
            self.container.set_state(phase=Phase.SCENE_READY)

    @property
    def preload_finished(self) -> bool:
        task = self._preload_task
        return task is None or task.done()

    async def wait_for_preload(self) -> None:
        """Await the background preload; mostly for terminal play and tests."""
        task = self._preload_task
        if task is not None:
            await asyncio.shield(task)

    async def begin(self) -> None:
        """连接视频流并加载第一个场景（仅在 BOOT/PRELOADING/SCENE_READY 阶段有效）"""
        if self._closed:
            return
        if self.state.phase not in _STARTABLE:
            logger.warning("begin() ignored in phase %s", self.state.phase.value)
            return
        try:
            self.audio.set_volume(self.state.volume)
            self.container.set_state(phase=Phase.CONNECTING)
            await self.stream.connect()
        except StreamChannelError as exc:
            self._fail(str(exc))
            return
        except Exception as exc:
            logger.exception("begin failed")
            self._fail(str(exc))
            return
        if self._closed:
            return
        await self.load_scene(0)

    async def teardown(self) -> None:
        """Stop listening and release the stream. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        self.npc_chat.shutdown()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        # The preload task is left to finish on its own; its callbacks are dropped
        self._preload_task = None
        self.stream.disconnect()
        try:
            self.audio.stop()
        except Exception as exc:
            logger.debug("audio stop failed (ignored): %s", exc)
        logger.info("session torn down")

    async def restart(self) -> None:
        """重置会话记录，从预加载重新开始"""
        if self._closed:
            return
        if self.npc_chat.is_open:
            self.npc_chat.close_chat()
        await self.stream.end_scene()
        self.container.reset()
        # 未完成的预加载不会重跑，新一轮 preload_all 会加入它
        self._preload_task = None
        await self.start()

    # =========================================================================
    # Scene flow
    # =========================================================================

    async def load_scene(self, scene_id: int, previous_choice: Optional[str] = None) -> None:
        if self._closed:
            return
        scene = self.registry.get(scene_id)
        if scene is None:
            self._fail(f"Scene {scene_id} not found in registry")
            return

        try:
            self.container.set_state(
                current_scene_id=scene_id,
                phase=Phase.SCENE_LOADING,
                current_narrative="",
                current_choices=(),
            )
            await asyncio.gather(
                self.stream.start_scene(build_stream_prompt(scene.stream_context)),
                self._crossfade(scene.audio_type),
            )
        except StreamChannelError as exc:
            self._fail(str(exc))
            return
        except Exception as exc:
            logger.exception("failed to load scene %s", scene_id)
            self._fail(str(exc))
            return
        if self._closed:
            return

        self.container.set_state(phase=Phase.NARRATIVE)
        narrative = await self._narrative_for(scene, previous_choice)
        if self._closed or self.state.current_scene_id != scene_id:
            return
        self.container.set_state(current_narrative=narrative)

    async def _crossfade(self, tag: str) -> None:
        try:
            self.audio.crossfade_to(tag, self.crossfade_seconds)
        except Exception as exc:
            logger.warning("audio crossfade failed: %s", exc)

    async def _narrative_for(self, scene: Scene, previous_choice: Optional[str]) -> str:
        try:
            return await self.generator.generate_narrative(
                scene.name, scene.narrative_context, previous_choice
            )
        except GenerationError as exc:
            logger.warning("narrative generation failed for scene %s: %s", scene.id, exc)
        except Exception:
            logger.exception("unexpected narrative failure for scene %s", scene.id)
        return scene.narrative_context

    async def narrative_complete(self) -> None:
        """The narrative has been shown; offer choices."""
        if not self._accepts_input():
            return
        scene = self.current_scene()
        if scene is None:
            self._fail(f"Scene {self.state.current_scene_id} not found in registry")
            return

        choices = await self._choices_for(scene)
        if self._closed or self.state.current_scene_id != scene.id:
            return
        self.container.set_state(phase=Phase.CHOICES, current_choices=tuple(choices))

    async def _choices_for(self, scene: Scene) -> List[Choice]:
        fallback = list(scene.fallback_choices or [])
        # Branch choice ids key the branch map, so they are never generated
        if scene.transition.type in ("branch", "ending"):
            return fallback
        try:
            return await self.generator.generate_choices(
                scene.name, scene.narrative_context, scene.choice_context
            )
        except GenerationError as exc:
            logger.warning("choice generation failed for scene %s: %s", scene.id, exc)
        except Exception:
            logger.exception("unexpected choice failure for scene %s", scene.id)
        return fallback

    async def choose(self, choice_id: str, target_scene_id: Optional[int] = None) -> None:
        if not self._accepts_input():
            return
        state = self.state
        choice = next((c for c in state.current_choices if c.id == choice_id), None)
        if choice is None:
            self._fail(f"Unknown choice {choice_id!r} for scene {state.current_scene_id}")
            return

        self.container.record_choice(state.current_scene_id, choice)
        self.container.set_state(phase=Phase.ACTING)
        self.stream.interact(build_action_prompt(choice.text))
        await self.advance(choice_id, target_scene_id)

    async def advance(self, choice_id: Optional[str] = None, target_scene_id: Optional[int] = None) -> None:
        """
        离开当前场景

        Args:
            choice_id: 玩家选项 id；为空时相当于“下一步”
            target_scene_id: 探索池场景中玩家指定的目标，不在候选中时忽略
        """
        if not self._accepts_input():
            return
        scene_id = self.state.current_scene_id
        try:
            self.container.mark_visited(scene_id)
        except ValueError as exc:
            self._fail(str(exc))
            return

        outcome = self.resolver.resolve_next(scene_id, choice_id, self.state.visited_scenes)

        if isinstance(outcome, Ended):
            ending = self.container.compute_ending()
            self.audio.play_one_shot("ending")
            logger.info("session ended: %s", ending.id)
            return

        if isinstance(outcome, Unresolved):
            logger.error("transition from scene %s unresolved: %s", scene_id, outcome.reason)
            self._fail(outcome.reason)
            return

        if isinstance(outcome, VisitOptions):
            next_id = outcome.advance_to
            if target_scene_id is not None:
                if target_scene_id in outcome.scene_ids:
                    next_id = target_scene_id
                else:
                    logger.warning(
                        "scene %s is not an option from scene %s, using %s",
                        target_scene_id,
                        scene_id,
                        next_id,
                    )
        elif isinstance(outcome, Advance):
            next_id = outcome.advance_to
        else:
            self._fail(f"unexpected transition outcome {outcome!r}")
            return

        await self.transition_to(next_id, previous_choice=self._last_choice_text(scene_id))

    def _last_choice_text(self, scene_id: int) -> Optional[str]:
        history = self.state.choice_history
        if history and history[-1].scene_id == scene_id:
            return history[-1].text
        return None

    async def transition_to(self, scene_id: int, previous_choice: Optional[str] = None) -> None:
        if self._closed:
            return
        try:
            self.container.set_state(phase=Phase.TRANSITIONING)
            await self.stream.end_scene()
            self.audio.play_one_shot("transition")
            await self._sleep(self.transition_pause)
        except Exception as exc:
            logger.exception("transition to scene %s failed", scene_id)
            self._fail(str(exc))
            return
        if self._closed:
            return
        await self.load_scene(scene_id, previous_choice)

    # =========================================================================
    # Controls
    # =========================================================================

    def interact(self, prompt: str) -> bool:
        if self._closed or not prompt.strip():
            return False
        return self.stream.interact(prompt.strip())

    def set_volume(self, level: float) -> None:
        level = min(1.0, max(0.0, float(level)))
        self.container.set_state(volume=level)
        try:
            self.audio.set_volume(level)
        except Exception as exc:
            logger.warning("audio set_volume failed: %s", exc)

    def save(self) -> bool:
        return self.container.save()

    async def resume(self) -> bool:
        """
        恢复存档并重新加载当前场景

        Returns:
            bool: 是否找到并应用了存档
        """
        if self._closed:
            return False
        if not self.container.load():
            return False
        try:
            self.audio.set_volume(self.state.volume)
            if not self.stream.is_connected:
                self.container.set_state(phase=Phase.CONNECTING)
                await self.stream.connect()
        except StreamChannelError as exc:
            self._fail(str(exc))
            return True
        except Exception as exc:
            logger.exception("resume failed")
            self._fail(str(exc))
            return True
        await self.load_scene(self.state.current_scene_id)
        return True

    # =========================================================================
    # Internals
    # =========================================================================

    def _accepts_input(self) -> bool:
        if self._closed:
            return False
        phase = self.state.phase
        if phase in (Phase.ERROR, Phase.ENDING):
            logger.warning("input ignored in phase %s", phase.value)
            return False
        # 对话进行中场景暂停，先 close_chat()
        if phase == Phase.NPC_CHAT or self.npc_chat.is_open:
            logger.warning("input ignored while npc chat is open")
            return False
        return True

    def _fail(self, message: str) -> None:
        if self._closed:
            return
        logger.error("session error: %s", message)
        self.container.fail(message)
