"""
协作服务：存储、生成、视频流、音频、预加载
"""
from .kv_store import (
    KeyValueStore,
    InMemoryKeyValueStore,
    FileKeyValueStore,
    FirestoreKeyValueStore,
    build_store,
)
from .asset_cache import TwoTierAssetCache
from .worker_pool import BoundedWorkerPool
from .preloader import AnchorPreloader
from .gemini_service import GeminiService, SceneGenerator, NpcReply
from .stream_session import LiveStreamSession, OfflineStreamClient, StreamClient
from .audio_engine import AudioEngine, SilentAudioEngine
from .npc_chat import NpcChatService, ChatMessage

__all__ = [
    # Storage
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "FileKeyValueStore",
    "FirestoreKeyValueStore",
    "build_store",
    "TwoTierAssetCache",
    # Preloading
    "BoundedWorkerPool",
    "AnchorPreloader",
    # Generation
    "GeminiService",
    "SceneGenerator",
    "NpcReply",
    # Stream / audio
    "LiveStreamSession",
    "OfflineStreamClient",
    "StreamClient",
    "AudioEngine",
    "SilentAudioEngine",
    # Chat
    "NpcChatService",
    "ChatMessage",
]
