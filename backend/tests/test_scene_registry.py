import json

import pytest

from odyssey_engine.errors import TransitionResolutionError
from odyssey_engine.world.scene_registry import SceneRegistry


def _scene(scene_id, transition, **extra):
    return {"id": scene_id, "name": f"Scene {scene_id}", "transition": transition, **extra}


def test_default_story_loads_all_scenes():
    registry = SceneRegistry.load_default()

    assert len(registry) == 11
    assert registry.ids == list(range(11))
    assert registry.title
    assert registry.require(10).is_terminal
    assert not registry.require(0).is_terminal


def test_default_story_branch_choices_key_the_branch_map():
    registry = SceneRegistry.load_default()
    scene = registry.require(4)

    assert registry.branch_destinations(4) == {
        "goto-moon": 5,
        "goto-mars": 6,
        "goto-asteroid": 7,
    }
    assert {choice.id for choice in scene.fallback_choices} == set(scene.transition.options)


def test_default_story_npcs_resolve():
    registry = SceneRegistry.load_default()

    assert registry.get_npc("nova").name == "NOVA"
    assert registry.get_npc("drChen").scene_id == 5
    assert registry.get_npc("nobody") is None
    for scene in registry:
        for npc_id in scene.npcs:
            assert registry.get_npc(npc_id) is not None


def test_lookup_outside_registry():
    registry = SceneRegistry.load_default()

    assert registry.get(99) is None
    assert registry.get(-1) is None
    assert 99 not in registry
    assert "0" not in registry
    assert 0 in registry
    with pytest.raises(TransitionResolutionError, match="not found"):
        registry.require(99)


def test_branch_destinations_empty_for_non_branch_scene():
    registry = SceneRegistry.load_default()
    assert registry.branch_destinations(0) == {}
    assert registry.branch_destinations(99) == {}


def test_transition_to_unknown_scene_is_rejected():
    payload = {"scenes": [_scene(0, {"type": "linear", "next": 3})]}

    with pytest.raises(TransitionResolutionError, match="unknown scene 3") as exc:
        SceneRegistry.from_dict(payload)
    assert exc.value.scene_id == 0


def test_sparse_scene_ids_are_rejected():
    payload = {
        "scenes": [
            _scene(0, {"type": "linear", "next": 2}),
            _scene(2, {"type": "ending"}),
        ]
    }
    with pytest.raises(TransitionResolutionError, match="dense"):
        SceneRegistry.from_dict(payload)


def test_unknown_transition_type_is_rejected():
    payload = {"scenes": [_scene(0, {"type": "teleport", "next": 0})]}
    with pytest.raises(TransitionResolutionError, match="malformed"):
        SceneRegistry.from_dict(payload)


def test_visit_pool_must_not_contain_its_exit():
    payload = {
        "scenes": [
            _scene(0, {"type": "visit", "pool": [0, 1], "minVisits": 1, "then": 1}),
            _scene(1, {"type": "ending"}),
        ]
    }
    with pytest.raises(TransitionResolutionError):
        SceneRegistry.from_dict(payload)


def test_fallback_choices_need_exactly_three():
    payload = {
        "scenes": [
            _scene(
                0,
                {"type": "ending"},
                fallbackChoices=[{"id": "only", "text": "Only option", "tone": "bold"}],
            )
        ]
    }
    with pytest.raises(TransitionResolutionError):
        SceneRegistry.from_dict(payload)


def test_empty_registry_is_rejected():
    with pytest.raises(TransitionResolutionError, match="empty"):
        SceneRegistry.from_dict({"scenes": []})


def test_from_file_reads_story_json(tmp_path):
    story = {
        "title": "Short Hop",
        "scenes": [
            _scene(0, {"type": "linear", "next": 1}, audioType="bridge"),
            _scene(1, {"type": "ending"}),
        ],
    }
    path = tmp_path / "story.json"
    path.write_text(json.dumps(story), encoding="utf-8")

    registry = SceneRegistry.from_file(path)

    assert registry.title == "Short Hop"
    assert len(registry) == 2
    assert registry.require(0).audio_type == "bridge"
