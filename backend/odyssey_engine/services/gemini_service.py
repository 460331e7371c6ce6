"""
Gemini 生成服务 - 文本、图像与结构化输出（google-genai）

所有失败统一抛出 ``GenerationError``（结构化输出格式错误时为 ``ParseError``），
由调用方决定重试还是回退到静态内容。
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from google import genai
from google.genai import types
from pydantic import ValidationError

from odyssey_engine.config import settings
from odyssey_engine.errors import GenerationError, ParseError
from odyssey_engine.models.preload import SceneAsset
from odyssey_engine.models.scene import Choice
from odyssey_engine.world.story_bible import (
    NARRATIVE_SYSTEM_PROMPT,
    build_choices_prompt,
    build_narrative_prompt,
)

logger = logging.getLogger(__name__)

EMOTION_KEYWORDS: Dict[str, List[str]] = {
    "excited": [
        "exciting", "incredible", "amazing", "fantastic", "wonderful",
        "thrilling", "remarkable", "extraordinary", "brilliant", "magnificent",
        "!", "can you believe", "look at this", "you won't believe",
    ],
    "concerned": [
        "worried", "concerning", "dangerous", "careful", "warning",
        "risk", "threat", "caution", "afraid", "trouble",
        "unfortunately", "problem", "issue", "alarming",
    ],
    "surprised": [
        "impossible", "unexpected", "what the", "no way", "unbelievable",
        "never seen", "how is this", "can't be", "shocked", "astonishing",
        "didn't expect", "out of nowhere",
    ],
    "thoughtful": [
        "perhaps", "consider", "wonder", "interesting", "theory",
        "hypothesis", "contemplate", "ponder", "reflect", "curious",
        "think about", "what if", "imagine", "suggests",
    ],
}


@dataclass
class NpcReply:
    text: str
    emotion: str = "neutral"


class SceneGenerator(Protocol):
    """Generator contract consumed by the preloader, session and NPC chat."""

    async def generate_image(self, prompt: str) -> SceneAsset: ...

    async def generate_text(self, prompt: str, system_prompt: Optional[str] = None) -> str: ...

    async def generate_structured(self, prompt: str) -> Any: ...

    async def generate_narrative(
        self, scene_name: str, narrative_context: str, previous_choice: Optional[str] = None
    ) -> str: ...

    async def generate_choices(
        self, scene_name: str, narrative_context: str, choice_context: str
    ) -> List[Choice]: ...

    async def generate_npc_response(
        self, messages: List[Dict[str, Any]], system_prompt: str
    ) -> NpcReply: ...


def detect_emotion(text: str) -> str:
    """Score each emotion by keyword hits; ties keep the earlier emotion."""
    lower = text.lower()
    best_emotion = "neutral"
    best_score = 0
    for emotion, keywords in EMOTION_KEYWORDS.items():
        score = sum(1 for keyword in keywords if keyword in lower)
        if score > best_score:
            best_score = score
            best_emotion = emotion
    return best_emotion


def strip_code_block(text: str) -> str:
    """Remove markdown fences the model sometimes wraps JSON in."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```[a-zA-Z]*\s*\n?", "", cleaned)
        cleaned = re.sub(r"\n?```\s*$", "", cleaned)
    return cleaned.strip()


class GeminiService:
    """Gemini 生成服务"""

    def __init__(self, client: Optional[genai.Client] = None) -> None:
        self.client = client or genai.Client(api_key=settings.gemini_api_key)
        self.text_model = settings.gemini_text_model
        self.image_model = settings.gemini_image_model
        self.timeout_seconds = settings.gemini_timeout_seconds

    async def _call(self, model: str, contents: Any, config: types.GenerateContentConfig) -> Any:
        """调用 generate_content，超时与 SDK 异常统一转换为 GenerationError"""
        try:
            return await asyncio.wait_for(
                self.client.aio.models.generate_content(
                    model=model,
                    contents=contents,
                    config=config,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise GenerationError(
                f"Gemini API timeout after {self.timeout_seconds:.0f}s", model=model
            ) from exc
        except GenerationError:
            raise
        except Exception as exc:
            raise GenerationError(f"Gemini API error: {exc}", model=model) from exc

    @staticmethod
    def _parts(response: Any) -> List[Any]:
        parts = getattr(response, "parts", None) or []
        if parts:
            return list(parts)
        candidates = getattr(response, "candidates", None) or []
        if not candidates:
            return []
        content = getattr(candidates[0], "content", None)
        return list(getattr(content, "parts", None) or [])

    def _extract_text(self, response: Any) -> str:
        chunks: List[str] = []
        for part in self._parts(response):
            text = getattr(part, "text", None)
            if isinstance(text, str) and not getattr(part, "thought", False):
                chunks.append(text)
        answer = "".join(chunks).strip()
        if not answer:
            raise GenerationError("no text part found in Gemini response", model=self.text_model)
        return answer

    # =========================================================================
    # Generator contract
    # =========================================================================

    async def generate_image(self, prompt: str) -> SceneAsset:
        """
        生成 16:9 场景锚点图

        Args:
            prompt: 完整的图像提示词

        Returns:
            SceneAsset: 图像字节与 MIME 类型

        Raises:
            GenerationError: 调用失败或响应中没有图像
        """
        logger.info("image generation starting: model=%s prompt=%.80s...", self.image_model, prompt)
        response = await self._call(
            self.image_model,
            [prompt],
            types.GenerateContentConfig(
                response_modalities=["TEXT", "IMAGE"],
                image_config=types.ImageConfig(aspect_ratio="16:9"),
            ),
        )
        for part in self._parts(response):
            inline_data = getattr(part, "inline_data", None)
            if inline_data is None:
                continue
            raw_bytes = getattr(inline_data, "data", None)
            if not raw_bytes:
                continue
            mime_type = getattr(inline_data, "mime_type", None) or "image/png"
            logger.info("image generated: mime=%s size=%d bytes", mime_type, len(raw_bytes))
            return SceneAsset(data=raw_bytes, mime_type=mime_type)
        raise GenerationError("no image data in Gemini response", model=self.image_model)

    async def generate_text(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        response = await self._call(
            self.text_model,
            prompt,
            types.GenerateContentConfig(system_instruction=system_prompt),
        )
        return self._extract_text(response)

    async def generate_structured(self, prompt: str) -> Any:
        """生成 JSON 输出并解析"""
        response = await self._call(
            self.text_model,
            prompt,
            types.GenerateContentConfig(response_mime_type="application/json"),
        )
        text = strip_code_block(self._extract_text(response))
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise ParseError(f"failed to parse JSON: {text[:200]}", model=self.text_model) from exc

    # =========================================================================
    # Story helpers
    # =========================================================================

    async def generate_narrative(
        self,
        scene_name: str,
        narrative_context: str,
        previous_choice: Optional[str] = None,
    ) -> str:
        prompt = build_narrative_prompt(scene_name, narrative_context, previous_choice)
        return await self.generate_text(prompt, system_prompt=NARRATIVE_SYSTEM_PROMPT)

    async def generate_choices(
        self,
        scene_name: str,
        narrative_context: str,
        choice_context: str,
    ) -> List[Choice]:
        """
        生成场景选项

        Returns:
            恰好 3 个 id 互不相同的选项

        Raises:
            ParseError: 数量不对、字段无效或 id 重复
        """
        payload = await self.generate_structured(
            build_choices_prompt(scene_name, narrative_context, choice_context)
        )
        if not isinstance(payload, list) or len(payload) != 3:
            got = len(payload) if isinstance(payload, list) else type(payload).__name__
            raise ParseError(f"expected 3 choices, got {got}", model=self.text_model)
        try:
            choices = [Choice.model_validate(item) for item in payload]
        except ValidationError as exc:
            raise ParseError(f"invalid choice object: {exc}", model=self.text_model) from exc
        if len({choice.id for choice in choices}) != 3:
            raise ParseError("choice ids are not unique", model=self.text_model)
        return choices

    async def generate_npc_response(
        self,
        messages: List[Dict[str, Any]],
        system_prompt: str,
    ) -> NpcReply:
        """
        生成 NPC 回复并识别情绪

        Args:
            messages: ``{"role": "user"|"model", "text": ...}`` 形式的对话历史
            system_prompt: NPC 人设提示词

        Returns:
            NpcReply: 回复文本与情绪标签
        """
        contents = [
            types.Content(role=message["role"], parts=[types.Part(text=message["text"])])
            for message in messages
        ]
        response = await self._call(
            self.text_model,
            contents,
            types.GenerateContentConfig(system_instruction=system_prompt),
        )
        text = self._extract_text(response)
        return NpcReply(text=text, emotion=detect_emotion(text))
