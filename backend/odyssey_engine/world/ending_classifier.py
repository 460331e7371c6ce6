"""
结局判定 - 根据一次游玩中各语气选项的占比决定结局

只看各语气的数量，与选择顺序无关。
平局按固定优先级处理：bold > cautious > creative。
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping

from odyssey_engine.models.scene import Tone
from odyssey_engine.models.session import Ending

# A playthrough is balanced when no tone exceeds this share of all choices
BALANCE_THRESHOLD = 0.4

BALANCED_ENDING = Ending(
    id="one-more-mission",
    title="One More Mission",
    description=(
        "You radio Earth with your findings and a short message: preparing for next mission. "
        "There is always more to see and more to learn. The Odyssey turns toward the next star."
    ),
)

ENDINGS_BY_TONE: Dict[Tone, Ending] = {
    Tone.BOLD: Ending(
        id="pioneer",
        title="The Pioneer",
        description=(
            "You push the throttle forward and the solar system shrinks to a point of light. "
            "Ahead is the unknown. You are the first, but you will not be the last."
        ),
    ),
    Tone.CAUTIOUS: Ending(
        id="discoverer",
        title="The Discoverer",
        description=(
            "You set course for home carrying knowledge that will reshape what people believe "
            "is possible. As Earth grows in the viewport, you know this is only the beginning."
        ),
    ),
    Tone.CREATIVE: Ending(
        id="changed",
        title="Changed",
        description=(
            "You power down the engines and drift among the rings. The signal, the life, the "
            "ancient rock: you finally see the pattern that connects them, and you are part of it."
        ),
    ),
}


def _tone_of(entry: Any) -> Any:
    if isinstance(entry, Mapping):
        return entry.get("tone")
    return getattr(entry, "tone", None)


def count_tones(choice_history: Iterable[Any]) -> Dict[Tone, int]:
    """Count known tones; entries without a recognised tone are ignored."""
    counts = {tone: 0 for tone in Tone}
    for entry in choice_history:
        raw = _tone_of(entry)
        try:
            tone = Tone(raw)
        except ValueError:
            continue
        counts[tone] += 1
    return counts


def classify(choice_history: Iterable[Any]) -> Ending:
    """
    根据选择历史判定结局

    Args:
        choice_history: ChoiceRecord/Choice 对象，或带 ``tone`` 键的字典

    Returns:
        Ending: 占比最高的语气都不超过 40% 时为均衡结局，否则按主导语气
    """
    counts = count_tones(choice_history)
    bold = counts[Tone.BOLD]
    cautious = counts[Tone.CAUTIOUS]
    creative = counts[Tone.CREATIVE]

    highest = max(bold, cautious, creative)
    total = bold + cautious + creative

    if total > 0 and highest / total <= BALANCE_THRESHOLD:
        return BALANCED_ENDING

    # Tie-break order is fixed; see DESIGN.md open questions
    if bold >= cautious and bold >= creative:
        return ENDINGS_BY_TONE[Tone.BOLD]
    if cautious >= bold and cautious >= creative:
        return ENDINGS_BY_TONE[Tone.CAUTIOUS]
    return ENDINGS_BY_TONE[Tone.CREATIVE]
