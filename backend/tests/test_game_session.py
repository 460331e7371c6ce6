import asyncio

import pytest

from odyssey_engine.errors import GenerationError
from odyssey_engine.models import Choice, Phase, PreloadProgress, SceneAsset
from odyssey_engine.runtime.game_session import GameSession
from odyssey_engine.services.audio_engine import SilentAudioEngine
from odyssey_engine.services.gemini_service import NpcReply
from odyssey_engine.services.kv_store import InMemoryKeyValueStore
from odyssey_engine.services.stream_session import LiveStreamSession, OfflineStreamClient
from odyssey_engine.world.scene_registry import SceneRegistry

GENERATED = [
    Choice(id="a", text="Alpha", tone="bold"),
    Choice(id="b", text="Beta", tone="cautious"),
    Choice(id="c", text="Gamma", tone="creative"),
]


class _ScriptedGenerator:
    def __init__(self, error=None):
        self.error = error
        self.narrative_calls = []
        self.image_calls = 0

    def _maybe_fail(self):
        if self.error is not None:
            raise self.error

    async def generate_image(self, prompt):
        self.image_calls += 1
        self._maybe_fail()
        return SceneAsset(data=b"anchor")

    async def generate_text(self, prompt, system_prompt=None):
        self._maybe_fail()
        return "text"

    async def generate_structured(self, prompt):
        self._maybe_fail()
        return {}

    async def generate_narrative(self, scene_name, narrative_context, previous_choice=None):
        self.narrative_calls.append((scene_name, previous_choice))
        self._maybe_fail()
        return f"Narrative for {scene_name}"

    async def generate_choices(self, scene_name, narrative_context, choice_context):
        self._maybe_fail()
        return list(GENERATED)

    async def generate_npc_response(self, messages, system_prompt):
        self._maybe_fail()
        return NpcReply(text="Aye, Captain.", emotion="neutral")


class _CrashingStreamClient(OfflineStreamClient):
    async def start_stream(self, prompt):
        raise RuntimeError("renderer crashed")


class _RefusingStreamClient(OfflineStreamClient):
    async def connect(self):
        return False


class _BrokenPreloader:
    async def preload_all(self, on_progress=None):
        raise RuntimeError("cache exploded")

    def get_progress(self):
        return PreloadProgress.of(0, 11)

    def get_asset(self, scene_id):
        return None


def _session(generator=None, client=None, store=None, **kwargs):
    client = client if client is not None else OfflineStreamClient()
    stream = LiveStreamSession(lambda: client, start_retry_delay=0, interact_cooldown=0)
    session = GameSession(
        SceneRegistry.load_default(),
        generator if generator is not None else _ScriptedGenerator(),
        store=store if store is not None else InMemoryKeyValueStore(),
        stream=stream,
        audio=SilentAudioEngine(),
        transition_pause=0,
        **kwargs,
    )
    return session, client


async def _pick(session, choice_id, target_scene_id=None):
    await session.narrative_complete()
    await session.choose(choice_id, target_scene_id)


@pytest.mark.asyncio
async def test_start_enters_scene_ready_once_an_anchor_is_cached():
    phases = []
    session, _ = _session(on_change=lambda new, old: phases.append(new.phase))

    await session.start()
    assert session.state.phase == Phase.PRELOADING
    await session.wait_for_preload()

    assert session.state.phase == Phase.SCENE_READY
    assert session.progress.loaded == 11
    assert session.preload_finished
    assert phases[:2] == [Phase.PRELOADING, Phase.SCENE_READY]


@pytest.mark.asyncio
async def test_preload_failure_moves_to_error():
    session, _ = _session(preloader=_BrokenPreloader())

    await session.start()
    await session.wait_for_preload()

    assert session.state.phase == Phase.ERROR
    assert "Preload failed" in session.state.error


@pytest.mark.asyncio
async def test_begin_loads_first_scene():
    session, client = _session()
    await session.start()
    await session.wait_for_preload()

    await session.begin()

    state = session.state
    assert state.phase == Phase.NARRATIVE
    assert state.current_scene_id == 0
    assert state.current_narrative == "Narrative for The Bridge"
    assert len(client.prompts) == 1
    assert "humming" in client.prompts[0]
    assert session.audio.ambient == "bridge"
    assert session.current_anchor().data == b"anchor"


@pytest.mark.asyncio
async def test_full_playthrough_reaches_an_ending():
    session, client = _session()
    await session.begin()

    for _ in range(4):
        await _pick(session, "a")
    assert session.state.current_scene_id == 4

    await session.narrative_complete()
    assert [choice.id for choice in session.state.current_choices] == [
        "goto-moon",
        "goto-mars",
        "goto-asteroid",
    ]
    await session.choose("goto-mars")
    assert session.state.current_scene_id == 6

    # Two pool scenes visited, so moving on skips the third
    await _pick(session, "a")
    assert session.state.current_scene_id == 7
    await _pick(session, "a")
    assert session.state.current_scene_id == 8

    await _pick(session, "a")
    await _pick(session, "a")
    assert session.state.current_scene_id == 10
    await _pick(session, "press-on")

    state = session.state
    assert state.phase == Phase.ENDING
    assert state.ending.id == "pioneer"
    assert len(state.choice_history) == 10
    assert state.visited_scenes == frozenset({0, 1, 2, 3, 4, 6, 7, 8, 9, 10})
    assert session.audio.one_shots[-1] == "ending"
    assert len(client.prompts) == 10

    # Input after the ending is ignored
    await session.advance()
    assert session.state.phase == Phase.ENDING


@pytest.mark.asyncio
async def test_narrative_acknowledges_previous_choice():
    generator = _ScriptedGenerator()
    session, _ = _session(generator)
    await session.begin()

    await _pick(session, "b")

    next_scene = session.registry.require(1)
    assert generator.narrative_calls[-1] == (next_scene.name, "Beta")
    assert session.state.choice_history[-1].tone == "cautious"


@pytest.mark.asyncio
async def test_visit_scene_can_target_a_specific_option():
    session, _ = _session()
    await session.begin()
    await session.transition_to(6)

    await _pick(session, "a", target_scene_id=5)
    assert session.state.current_scene_id == 5

    await session.narrative_complete()
    await session.advance()
    assert session.state.current_scene_id == 8


@pytest.mark.asyncio
async def test_visit_target_outside_options_uses_default():
    session, _ = _session()
    await session.begin()
    await session.transition_to(6)

    await _pick(session, "a", target_scene_id=9)

    assert session.state.current_scene_id == 7
    assert session.state.phase == Phase.NARRATIVE


@pytest.mark.asyncio
async def test_unknown_choice_moves_to_error():
    session, _ = _session()
    await session.begin()
    await session.narrative_complete()

    await session.choose("not-offered")

    assert session.state.phase == Phase.ERROR
    assert "not-offered" in session.state.error
    await session.advance()
    assert session.state.phase == Phase.ERROR


@pytest.mark.asyncio
async def test_branch_miss_is_an_error_not_an_ending():
    session, _ = _session()
    await session.begin()
    await session.transition_to(4)
    await session.narrative_complete()

    await session.advance(choice_id="goto-venus")

    state = session.state
    assert state.phase == Phase.ERROR
    assert state.ending is None
    assert "goto-venus" in state.error


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [GenerationError("backend down"), RuntimeError("unexpected")])
async def test_generation_failures_fall_back_to_story_text(error):
    session, _ = _session(_ScriptedGenerator(error=error))
    scene = session.registry.require(0)

    await session.begin()
    assert session.state.current_narrative == scene.narrative_context

    await session.narrative_complete()
    assert list(session.state.current_choices) == scene.fallback_choices
    assert session.state.phase == Phase.CHOICES


@pytest.mark.asyncio
async def test_stream_failure_moves_to_error():
    session, _ = _session(client=_CrashingStreamClient())

    await session.begin()

    assert session.state.phase == Phase.ERROR
    assert "renderer crashed" in session.state.error


@pytest.mark.asyncio
async def test_refused_connection_moves_to_error():
    session, _ = _session(client=_RefusingStreamClient())

    await session.begin()

    assert session.state.phase == Phase.ERROR
    assert "connection failed" in session.state.error


@pytest.mark.asyncio
async def test_teardown_is_idempotent_and_drops_progress():
    progress = []
    session, _ = _session(on_progress=progress.append)
    await session.start()
    task = session._preload_task

    await session.teardown()
    await session.teardown()
    await task

    assert session.is_closed
    assert progress == []
    assert session.state.phase == Phase.PRELOADING
    await session.begin()
    assert session.state.phase == Phase.PRELOADING


@pytest.mark.asyncio
async def test_restart_recovers_from_error():
    session, _ = _session()
    await session.begin()
    await _pick(session, "a")
    await session.narrative_complete()
    await session.choose("not-offered")
    assert session.state.phase == Phase.ERROR

    await session.restart()

    state = session.state
    assert state.phase == Phase.PRELOADING
    assert state.error is None
    assert state.choice_history == ()
    assert state.visited_scenes == frozenset()

    await session.wait_for_preload()
    await session.begin()
    assert session.state.phase == Phase.NARRATIVE
    assert session.state.current_scene_id == 0


@pytest.mark.asyncio
async def test_save_and_resume_continue_from_saved_scene():
    store = InMemoryKeyValueStore()
    first, _ = _session(store=store)
    await first.begin()
    await _pick(first, "a")
    await _pick(first, "b")
    first.set_volume(0.4)
    assert first.save() is True
    await first.teardown()

    second, client = _session(store=store)
    assert await second.resume() is True

    state = second.state
    assert state.current_scene_id == 2
    assert state.visited_scenes == frozenset({0, 1})
    assert [record.choice_id for record in state.choice_history] == ["a", "b"]
    assert state.volume == 0.4
    assert state.phase == Phase.NARRATIVE
    assert len(client.prompts) == 1
    assert second.audio.volume == 0.4


@pytest.mark.asyncio
async def test_resume_without_save_returns_false():
    session, _ = _session()
    assert await session.resume() is False
    assert session.state.phase == Phase.BOOT


@pytest.mark.asyncio
async def test_controls():
    session, client = _session()
    assert session.interact("wave") is False

    await session.begin()
    assert session.interact("  wave  ") is True
    assert session.interact("   ") is False

    session.set_volume(1.7)
    assert session.state.volume == 1.0
    assert session.audio.volume == 1.0
    session.set_volume(-1)
    assert session.state.volume == 0.0


@pytest.mark.asyncio
async def test_npc_chat_pauses_and_resumes_scene():
    session, _ = _session()
    await session.begin()

    assert session.npc_chat.open_chat("nova") is True
    assert session.state.phase == Phase.NPC_CHAT

    reply = await session.npc_chat.send_message("Status report?")
    assert reply.text == "Aye, Captain."

    session.npc_chat.close_chat()
    assert session.state.phase == Phase.NARRATIVE
    assert session.state.npc_chat_open is False


class _SlowImageGenerator(_ScriptedGenerator):
    async def generate_image(self, prompt):
        self.image_calls += 1
        await asyncio.sleep(0.01)
        return SceneAsset(data=b"anchor")


@pytest.mark.asyncio
async def test_restart_during_preload_keeps_progress_bounded():
    progress = []
    generator = _SlowImageGenerator()
    session, _ = _session(generator, on_progress=progress.append)

    await session.start()
    first_task = session._preload_task
    await asyncio.sleep(0.005)
    await session.restart()
    await asyncio.gather(first_task, session._preload_task)

    assert generator.image_calls == 11
    assert all(report.loaded <= report.total for report in progress)
    assert session.progress == PreloadProgress.of(11, 11)
    assert session.preloader.get_progress().loaded == 11
    assert session.state.phase == Phase.SCENE_READY


@pytest.mark.asyncio
async def test_npc_chat_cannot_revive_a_failed_session():
    session, _ = _session()
    await session.begin()
    session.container.fail("renderer lost")

    assert session.npc_chat.open_chat("nova") is False
    await session.advance()

    state = session.state
    assert state.phase == Phase.ERROR
    assert state.current_scene_id == 0
    assert state.npc_chat_open is False


@pytest.mark.asyncio
async def test_story_waits_while_npc_chat_is_open():
    session, _ = _session()
    await session.begin()
    await session.narrative_complete()
    assert session.npc_chat.open_chat("nova") is True

    await session.advance()
    await session.choose("a")

    state = session.state
    assert state.phase == Phase.NPC_CHAT
    assert state.current_scene_id == 0
    assert state.choice_history == ()

    session.npc_chat.close_chat()
    assert session.state.phase == Phase.CHOICES
    await session.choose("a")
    assert session.state.current_scene_id == 1


@pytest.mark.asyncio
async def test_teardown_closes_npc_chat():
    session, _ = _session()
    await session.begin()
    session.npc_chat.open_chat("nova")

    await session.teardown()

    assert session.npc_chat.is_open is False
    assert session.state.npc_chat_open is False
    assert session.npc_chat.open_chat("nova") is False
