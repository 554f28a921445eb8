from atmo_chat.client.cache import (
    ActiveEnvelope,
    ArchiveEnvelope,
    CacheStorage,
    ClientSessionCache,
    FileCacheStorage,
    HydrationCheckpoint,
    MemoryCacheStorage,
)
from atmo_chat.client.session_api import HttpSessionApi, LocalSessionApi, SessionApi

__all__ = [
    "ActiveEnvelope",
    "ArchiveEnvelope",
    "CacheStorage",
    "ClientSessionCache",
    "FileCacheStorage",
    "HttpSessionApi",
    "HydrationCheckpoint",
    "LocalSessionApi",
    "MemoryCacheStorage",
    "SessionApi",
]
