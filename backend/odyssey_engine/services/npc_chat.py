"""
NPC chat overlay.

Opening a chat pauses the scene flow (phase NPC_CHAT) and restores the
previous phase on close. The conversation itself lives here, not in the
session record; only ``npc_chat_open``/``active_npc_id`` are shared.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, List, Optional

from odyssey_engine.config import settings
from odyssey_engine.models.scene import Npc
from odyssey_engine.models.session import Phase
from odyssey_engine.services.audio_engine import AudioEngine
from odyssey_engine.services.gemini_service import SceneGenerator
from odyssey_engine.services.stream_session import LiveStreamSession
from odyssey_engine.world.scene_registry import SceneRegistry
from odyssey_engine.world.story_bible import build_npc_interact_prompt, build_npc_system_prompt

if TYPE_CHECKING:
    from odyssey_engine.runtime.session_state import SessionStateContainer

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "..."
FALLBACK_EMOTION = "concerned"

# 会话已结束或出错时不能再开启对话
_CLOSED_PHASES = {Phase.ERROR, Phase.ENDING}


@dataclass
class ChatMessage:
    role: str  # "user" | "npc"
    text: str
    emotion: str = "neutral"


class NpcChatService:
    def __init__(
        self,
        container: "SessionStateContainer",
        registry: SceneRegistry,
        generator: SceneGenerator,
        *,
        stream: Optional[LiveStreamSession] = None,
        audio: Optional[AudioEngine] = None,
        max_history: Optional[int] = None,
    ) -> None:
        self.container = container
        self.registry = registry
        self.generator = generator
        self.stream = stream
        self.audio = audio
        self.max_history = settings.npc_chat_max_history if max_history is None else max_history

        self.npc: Optional[Npc] = None
        self.messages: List[ChatMessage] = []
        self._system_prompt = ""
        self._phase_before_chat: Optional[Phase] = None
        self.is_waiting = False
        self._shut_down = False

    @property
    def is_open(self) -> bool:
        return self.npc is not None

    def open_chat(self, npc_id: str) -> bool:
        """
        与 NPC 开启对话，暂停场景流程。

        Args:
            npc_id: 注册表中的 NPC id

        Returns:
            是否成功开启；未知 NPC、会话已关闭或处于 ERROR/ENDING 时返回 False
        """
        if self._shut_down:
            return False
        state = self.container.get_state()
        if state.phase in _CLOSED_PHASES:
            logger.warning("npc chat refused in phase %s", state.phase.value)
            return False
        npc = self.registry.get_npc(npc_id)
        if npc is None:
            logger.warning("unknown npc: %s", npc_id)
            return False
        if self.is_open:
            self.close_chat()
            state = self.container.get_state()

        scene = self.registry.get(state.current_scene_id)
        scene_context = scene.narrative_context if scene is not None else ""

        self.npc = npc
        self.messages = [ChatMessage(role="npc", text=npc.greeting)]
        self._system_prompt = build_npc_system_prompt(npc, scene_context)
        self._phase_before_chat = Phase(state.phase)
        self.container.set_state(phase=Phase.NPC_CHAT, npc_chat_open=True, active_npc_id=npc.id)

        self._react("neutral")
        if self.audio is not None:
            self.audio.play_one_shot("chat-open")
        return True

    async def send_message(self, text: str) -> Optional[ChatMessage]:
        """Send one player line; returns the NPC reply (or fallback)."""
        text = (text or "").strip()
        if not text or self.npc is None or self.is_waiting:
            return None

        npc = self.npc
        self.messages.append(ChatMessage(role="user", text=text))
        self.is_waiting = True
        try:
            reply = await self.generator.generate_npc_response(
                self._history_payload(), self._system_prompt
            )
            message = ChatMessage(role="npc", text=reply.text, emotion=reply.emotion)
        except Exception as exc:
            logger.warning("npc %s reply failed: %s", npc.id, exc)
            message = ChatMessage(role="npc", text=FALLBACK_REPLY, emotion=FALLBACK_EMOTION)
        finally:
            self.is_waiting = False

        # Closed while waiting
        if self.npc is not npc:
            return message

        self.messages.append(message)
        if len(self.messages) > self.max_history * 2:
            self.messages = self.messages[-self.max_history:]
        self._react(message.emotion)
        return message

    def close_chat(self) -> None:
        if self.npc is None:
            return
        self.npc = None
        self.messages = []
        self._system_prompt = ""

        restore = self._phase_before_chat or Phase.CHOICES
        self._phase_before_chat = None
        if self.container.get_state().phase == Phase.NPC_CHAT:
            self.container.set_state(phase=restore, npc_chat_open=False, active_npc_id=None)
        else:
            # 对话期间进入了 ERROR 等阶段，保留该阶段
            self.container.set_state(npc_chat_open=False, active_npc_id=None)
        if self.audio is not None:
            self.audio.play_one_shot("chat-close")

    def _history_payload(self) -> List[Dict[str, str]]:
        recent = self.messages[-self.max_history:]
        return [
            {"role": "user" if message.role == "user" else "model", "text": message.text}
            for message in recent
        ]

    def _react(self, emotion: str) -> None:
        if self.stream is None or self.npc is None:
            return
        self.stream.interact(build_npc_interact_prompt(self.npc.name, emotion))

    def shutdown(self) -> None:
        """关闭当前对话，之后不再接受新的对话。"""
        self.close_chat()
        self._shut_down = True
