from itertools import permutations

from odyssey_engine.models import ChoiceRecord
from odyssey_engine.world.ending_classifier import BALANCED_ENDING, classify, count_tones


def _history(*tones):
    return [{"tone": tone} for tone in tones]


def test_even_mix_is_balanced():
    assert classify(_history("cautious", "bold", "creative")).id == "one-more-mission"


def test_balance_threshold_is_inclusive():
    # 2 of 5 is exactly 40%
    ending = classify(_history("bold", "bold", "cautious", "cautious", "creative"))
    assert ending == BALANCED_ENDING


def test_empty_history_is_deterministic():
    first = classify([])
    assert first.id == "pioneer"
    assert classify([]) == first


def test_three_bold_is_pioneer():
    history = _history("bold", "bold", "bold")
    assert classify(history).id == "pioneer"
    assert classify(history) == classify(history)


def test_dominant_tones():
    assert classify(_history("cautious", "cautious", "bold")).id == "discoverer"
    assert classify(_history("creative", "creative", "creative", "bold")).id == "changed"


def test_ties_prefer_bold_then_cautious():
    assert classify(_history("bold", "bold", "cautious", "cautious")).id == "pioneer"
    assert classify(_history("cautious", "cautious", "creative", "creative")).id == "discoverer"
    assert classify(_history("bold", "bold", "creative", "creative")).id == "pioneer"


def test_order_does_not_matter():
    tones = ("creative", "creative", "bold", "cautious", "creative")
    endings = {classify(_history(*order)).id for order in permutations(tones)}
    assert endings == {"changed"}


def test_unknown_tones_are_ignored():
    history = _history("reckless", "bold", None)
    counts = count_tones(history)

    assert sum(counts.values()) == 1
    assert classify(history).id == "pioneer"


def test_accepts_choice_records():
    history = [
        ChoiceRecord(scene_id=0, choice_id="a", text="A", tone="cautious"),
        ChoiceRecord(scene_id=1, choice_id="b", text="B", tone="cautious"),
        ChoiceRecord(scene_id=2, choice_id="c", text="C", tone="creative"),
    ]
    assert classify(history).id == "discoverer"
