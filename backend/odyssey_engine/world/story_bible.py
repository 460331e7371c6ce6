"""
故事设定 - 视觉风格、镜头预设与提示词构建

场景和 NPC 内容都在故事文件里，本模块只负责把它们拼成
图像、视频流和文本生成用的提示词。
"""
from __future__ import annotations

from typing import Optional

from odyssey_engine.models.scene import Npc

PROTAGONIST_NAME = "Captain Aria Chen"
PROTAGONIST_APPEARANCE = (
    "A woman in her mid-30s with short black hair and sharp, determined eyes, "
    "wearing a fitted dark navy flight suit with thin cyan piping and an ODYSSEY mission patch."
)

VISUAL_STYLE = {
    "core": (
        "Photorealistic cinematic science fiction. Grounded near-future technology, "
        "volumetric lighting, atmospheric haze, film grain."
    ),
    "lighting": (
        "Directional lighting with cool blue-cyan key lights and warm amber fill, "
        "deep shadows, visible light rays through dust and vapor."
    ),
    "palette": (
        "Deep space blacks, steel grays and navy blues with cyan, teal and amber accents. "
        "Holographic displays emit a soft blue-white glow."
    ),
}

CAMERA = {
    "ESTABLISHING": "Ultra-wide establishing shot, deep depth of field, slight low angle",
    "MEDIUM": "Medium shot at eye level, moderate depth of field, natural framing",
    "CLOSE": "Close-up with shallow depth of field, intimate framing",
    "POV": "First-person perspective, slight camera sway, wide field of view",
    "DRAMATIC": "Low angle dramatic shot, wide lens, exaggerated perspective, strong rim lighting",
}

NARRATIVE_SYSTEM_PROMPT = "\n".join([
    'You are the narrator of "Odyssey to the Stars", an interactive cinematic science fiction story.',
    "",
    "Writing style:",
    "- Evocative and cinematic, second person present tense",
    "- Rich sensory details: sound, light, temperature, texture",
    "- Each narrative beat is 2-4 sentences",
    "- Never break the fourth wall or mention game mechanics",
    "",
    f"The protagonist is {PROTAGONIST_NAME}, captain of the starship Odyssey on humanity's "
    "first deep-space exploration mission.",
])

NPC_REACTIONS = {
    "neutral": "{name} is speaking calmly and making steady eye contact. Ambient lighting is holding steady.",
    "excited": "{name} is gesturing enthusiastically and leaning forward. Nearby displays are flickering with data.",
    "concerned": "{name} is frowning slightly with arms crossed. Warning lights are casting amber reflections.",
    "surprised": "{name} is stepping back with widened eyes. A sudden flash of light is filling the room.",
    "thoughtful": "{name} is gazing away with one hand resting on chin. Soft blue light is shifting slowly.",
}


def camera_preset(name: Optional[str]) -> str:
    return CAMERA.get((name or "").upper(), CAMERA["ESTABLISHING"])


def build_image_prompt(scene_description: str, camera: Optional[str] = None) -> str:
    """Prompt for a scene anchor image."""
    return "\n".join([
        VISUAL_STYLE["core"],
        VISUAL_STYLE["lighting"],
        VISUAL_STYLE["palette"],
        "",
        f"Scene: {scene_description}",
        "",
        f"Camera: {camera_preset(camera)}",
        "",
        PROTAGONIST_APPEARANCE,
        "The captain is present in the scene.",
        "",
        "Photorealistic, cinematic 16:9 aspect ratio, film grain, anamorphic lens.",
        "No text, no UI overlays, no watermarks.",
    ])


def build_stream_prompt(stream_context: str) -> str:
    """
    实时视频流提示词

    视频流模型要求进行时动词（"is walking"，而不是 "walks"）。
    """
    return "\n".join([
        stream_context,
        "",
        "The scene is alive with subtle ambient motion.",
        "Atmospheric particles are drifting slowly through beams of light.",
        "The captain is standing and observing the environment.",
        "Equipment is humming with faint vibrations.",
        "",
        f"Visual style: {VISUAL_STYLE['core']}",
    ])


def build_narrative_prompt(
    scene_name: str,
    narrative_context: str,
    previous_choice: Optional[str] = None,
) -> str:
    choice_note = ""
    if previous_choice:
        choice_note = (
            f'The player just chose: "{previous_choice}". '
            "Acknowledge this choice naturally in the opening line."
        )
    return "\n".join([
        f'Generate a short narrative passage (2-4 sentences) for the scene "{scene_name}".',
        f"Context: {narrative_context}",
        choice_note,
        "",
        "Write in second person present tense. Be cinematic and evocative.",
        "Return ONLY the narrative text, no labels or formatting.",
    ])


def build_choices_prompt(scene_name: str, narrative_context: str, choice_context: str) -> str:
    return "\n".join([
        f'Based on the current scene "{scene_name}", generate exactly 3 choices for the player.',
        "",
        f"Scene context: {narrative_context}",
        f"Choice guidance: {choice_context}",
        "",
        "Return a JSON array of 3 objects:",
        '- "id": short kebab-case identifier',
        '- "text": choice text (8-15 words, second person, action-oriented)',
        '- "tone": one of "cautious", "bold", or "creative"',
        "",
        "Make the choices meaningfully different: one cautious, one bold, one creative.",
        "Return ONLY valid JSON, no markdown fences.",
    ])


def build_action_prompt(choice_text: str) -> str:
    """Stream interaction that acts out a chosen option."""
    return f"The captain is acting on a decision: {choice_text}. The environment is responding subtly."


def build_npc_system_prompt(npc: Npc, scene_context: str) -> str:
    return "\n".join([
        f"You are {npc.name}, {npc.role} at {npc.location}.",
        "",
        f"Appearance: {npc.appearance}",
        f"Personality: {npc.personality}",
        "",
        f"Scene context: {scene_context}",
        "",
        "Stay in character and respond in 1-3 sentences. You may share expertise, react "
        "emotionally, ask follow-up questions or use humor.",
        "Never break character. Never mention being an AI or a game.",
    ])


def build_npc_interact_prompt(npc_name: str, emotion: str = "neutral") -> str:
    template = NPC_REACTIONS.get(emotion, NPC_REACTIONS["neutral"])
    return template.format(name=npc_name)
