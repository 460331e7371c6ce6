"""
配置管理模块
"""
import json
import logging
import os
from pathlib import Path
from typing import List, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

# 加载环境变量
load_dotenv()

logger = logging.getLogger(__name__)

_DEFAULT_PRIORITY_TIERS = "[[0], [1, 2, 3], [4, 5, 6, 7, 8, 9, 10]]"


def _env_tiers(name: str, default: str) -> List[List[int]]:
    raw = os.getenv(name, default)
    try:
        tiers = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("invalid %s=%r, using default tiers", name, raw)
        tiers = json.loads(default)
    return [[int(scene_id) for scene_id in tier] for tier in tiers]


class Settings(BaseModel):
    """应用配置"""

    # Gemini API 配置
    gemini_api_key: str = os.getenv("GEMINI_API_KEY", "")
    gemini_text_model: str = os.getenv("GEMINI_TEXT_MODEL", "gemini-2.5-flash")
    gemini_image_model: str = os.getenv("GEMINI_IMAGE_MODEL", "gemini-2.5-flash-image")
    gemini_timeout_seconds: float = float(os.getenv("GEMINI_TIMEOUT_SECONDS", "30"))

    # 锚点图预加载
    preload_max_concurrency: int = int(os.getenv("PRELOAD_MAX_CONCURRENCY", "2"))
    preload_max_retries: int = int(os.getenv("PRELOAD_MAX_RETRIES", "3"))
    preload_backoff_base_seconds: float = float(os.getenv("PRELOAD_BACKOFF_BASE_SECONDS", "1.0"))
    # 越早用到的越先加载：开场、接近段、其余场景
    preload_priority_tiers: List[List[int]] = _env_tiers(
        "PRELOAD_PRIORITY_TIERS", _DEFAULT_PRIORITY_TIERS
    )

    # 持久化存储
    storage_backend: Literal["memory", "file", "firestore"] = os.getenv("STORAGE_BACKEND", "file")
    storage_path: str = os.getenv("STORAGE_PATH", "./.odyssey_store.json")
    # 大致相当于浏览器 localStorage 的配额
    storage_capacity_bytes: int = int(os.getenv("STORAGE_CAPACITY_BYTES", str(5 * 1024 * 1024)))
    firestore_database: str = os.getenv("FIRESTORE_DATABASE", "(default)")
    firestore_collection: str = os.getenv("FIRESTORE_COLLECTION", "odyssey_kv")
    session_storage_key: str = "odyssey_save"
    anchor_key_prefix: str = "odyssey_anchor_"

    # 实时视频流
    stream_api_key: str = os.getenv("STREAM_API_KEY", "").strip()
    stream_connect_timeout_seconds: float = float(os.getenv("STREAM_CONNECT_TIMEOUT_SECONDS", "30"))
    stream_start_max_retries: int = int(os.getenv("STREAM_START_MAX_RETRIES", "10"))
    stream_start_retry_delay_seconds: float = float(os.getenv("STREAM_START_RETRY_DELAY_SECONDS", "0.3"))
    interact_cooldown_seconds: float = float(os.getenv("INTERACT_COOLDOWN_SECONDS", "1.5"))

    # 会话流程
    default_volume: float = float(os.getenv("DEFAULT_VOLUME", "0.7"))
    crossfade_seconds: float = 1.5
    transition_pause_seconds: float = 0.5
    npc_chat_max_history: int = int(os.getenv("NPC_CHAT_MAX_HISTORY", "20"))
    story_path: Optional[str] = os.getenv("STORY_PATH") or None

    model_config = ConfigDict(case_sensitive=False)


# 全局配置实例
settings = Settings()


def validate_config() -> bool:
    """
    验证配置是否完整

    Returns:
        bool: 配置是否有效
    """
    if not settings.gemini_api_key:
        logger.warning("GEMINI_API_KEY is not set; generation will fall back to static content")
        return False

    if settings.story_path and not Path(settings.story_path).exists():
        logger.warning("story file does not exist: %s", settings.story_path)
        return False

    return True
