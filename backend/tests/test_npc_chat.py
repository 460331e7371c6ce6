import asyncio

import pytest

from odyssey_engine.errors import GenerationError
from odyssey_engine.models import Phase
from odyssey_engine.runtime.session_state import SessionStateContainer
from odyssey_engine.services.audio_engine import SilentAudioEngine
from odyssey_engine.services.gemini_service import NpcReply
from odyssey_engine.services.kv_store import InMemoryKeyValueStore
from odyssey_engine.services.npc_chat import NpcChatService
from odyssey_engine.services.stream_session import LiveStreamSession, OfflineStreamClient
from odyssey_engine.world.scene_registry import SceneRegistry


class _FakeChatGenerator:
    def __init__(self, reply="Interesting question, Captain.", fail=False):
        self.reply = reply
        self.fail = fail
        self.calls = []

    async def generate_npc_response(self, messages, system_prompt):
        self.calls.append({"messages": list(messages), "system_prompt": system_prompt})
        if self.fail:
            raise GenerationError("quota exceeded")
        return NpcReply(text=self.reply, emotion="thoughtful")


def _chat(generator=None, stream=None, max_history=20):
    registry = SceneRegistry.load_default()
    container = SessionStateContainer(InMemoryKeyValueStore(), scene_ids=registry.ids)
    container.set_state(current_scene_id=5, phase=Phase.CHOICES)
    audio = SilentAudioEngine()
    service = NpcChatService(
        container,
        registry,
        generator or _FakeChatGenerator(),
        stream=stream,
        audio=audio,
        max_history=max_history,
    )
    return service, container, audio


def test_open_unknown_npc_is_a_no_op():
    service, container, audio = _chat()

    assert service.open_chat("ghost") is False
    assert container.get_state().phase == Phase.CHOICES
    assert audio.one_shots == []


def test_open_chat_pauses_scene_and_seeds_greeting():
    service, container, audio = _chat()

    assert service.open_chat("drChen") is True

    state = container.get_state()
    assert state.phase == Phase.NPC_CHAT
    assert state.npc_chat_open is True
    assert state.active_npc_id == "drChen"
    assert service.messages[0].role == "npc"
    assert service.messages[0].text.startswith("Captain.")
    assert audio.one_shots == ["chat-open"]


@pytest.mark.asyncio
async def test_send_message_uses_character_prompt_and_history():
    generator = _FakeChatGenerator()
    service, container, _ = _chat(generator)
    service.open_chat("drChen")

    reply = await service.send_message("  What are you seeing?  ")

    assert reply.text == "Interesting question, Captain."
    assert reply.emotion == "thoughtful"
    call = generator.calls[0]
    assert "Dr. Lin Chen" in call["system_prompt"]
    assert container.get_state().current_scene_id == 5
    assert [message["role"] for message in call["messages"]] == ["model", "user"]
    assert call["messages"][-1]["text"] == "What are you seeing?"
    assert [message.role for message in service.messages] == ["npc", "user", "npc"]


@pytest.mark.asyncio
async def test_blank_messages_are_ignored():
    generator = _FakeChatGenerator()
    service, _, _ = _chat(generator)
    service.open_chat("nova")

    assert await service.send_message("   ") is None
    assert generator.calls == []


@pytest.mark.asyncio
async def test_generation_failure_falls_back_to_ellipsis():
    service, _, _ = _chat(_FakeChatGenerator(fail=True))
    service.open_chat("nova")

    reply = await service.send_message("Status?")

    assert reply.text == "..."
    assert reply.emotion == "concerned"
    assert service.messages[-1] == reply


@pytest.mark.asyncio
async def test_history_sent_and_kept_is_bounded():
    generator = _FakeChatGenerator()
    service, _, _ = _chat(generator, max_history=2)
    service.open_chat("nova")

    for turn in range(4):
        await service.send_message(f"question {turn}")

    assert all(len(call["messages"]) <= 2 for call in generator.calls)
    assert len(service.messages) <= 4
    assert service.messages[-1].role == "npc"


def test_close_chat_restores_previous_phase():
    service, container, audio = _chat()
    service.open_chat("nova")

    service.close_chat()
    service.close_chat()

    state = container.get_state()
    assert state.phase == Phase.CHOICES
    assert state.npc_chat_open is False
    assert state.active_npc_id is None
    assert service.messages == []
    assert audio.one_shots == ["chat-open", "chat-close"]


@pytest.mark.asyncio
async def test_chat_reactions_reach_the_live_stream():
    client = OfflineStreamClient()
    stream = LiveStreamSession(lambda: client, interact_cooldown=0)
    await stream.connect()
    await stream.start_scene("lunar outpost")
    service, _, _ = _chat(stream=stream)

    service.open_chat("drChen")
    await service.send_message("Hello")
    await asyncio.sleep(0)

    assert len(client.interactions) == 2
    assert "Dr. Lin Chen is speaking calmly" in client.interactions[0]
    assert "gazing away" in client.interactions[1]


@pytest.mark.parametrize("phase", [Phase.ERROR, Phase.ENDING])
def test_open_chat_refused_after_session_stopped(phase):
    service, container, audio = _chat()
    container.set_state(phase=phase)

    assert service.open_chat("drChen") is False

    state = container.get_state()
    assert state.phase == phase
    assert state.npc_chat_open is False
    assert audio.one_shots == []


def test_close_chat_keeps_error_raised_during_chat():
    service, container, _ = _chat()
    service.open_chat("drChen")

    container.fail("stream lost")
    service.close_chat()

    state = container.get_state()
    assert state.phase == Phase.ERROR
    assert state.npc_chat_open is False
    assert state.active_npc_id is None


def test_shutdown_closes_chat_and_refuses_new_ones():
    service, container, _ = _chat()
    service.open_chat("drChen")

    service.shutdown()

    assert service.is_open is False
    assert container.get_state().phase == Phase.CHOICES
    assert service.open_chat("drChen") is False
