"""
预加载模型 - 缓存的锚点图与进度报告
"""
from __future__ import annotations

import base64
import json

from pydantic import BaseModel, ConfigDict, Field


class SceneAsset(BaseModel):
    """Opaque binary anchor image for a scene."""
    model_config = ConfigDict(frozen=True)

    data: bytes
    mime_type: str = "image/png"

    def to_storage(self) -> str:
        """Serialize for a string-valued durable store."""
        return json.dumps({
            "mime_type": self.mime_type,
            "data": base64.b64encode(self.data).decode("ascii"),
        })

    @classmethod
    def from_storage(cls, raw: str) -> "SceneAsset":
        payload = json.loads(raw)
        return cls(
            data=base64.b64decode(payload["data"]),
            mime_type=payload.get("mime_type") or "image/png",
        )


class PreloadProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    loaded: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)
    percent: int = 0

    @classmethod
    def of(cls, loaded: int, total: int) -> "PreloadProgress":
        percent = round(loaded / total * 100) if total > 0 else 0
        return cls(loaded=loaded, total=total, percent=percent)
