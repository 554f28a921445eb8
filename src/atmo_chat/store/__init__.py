from atmo_chat.store.entities import EntityQueue
from atmo_chat.store.events import EventEmitter
from atmo_chat.store.models import ChatMessage, ChatSession, ParsedEntity
from atmo_chat.store.sessions import SessionLifecycleManager
from atmo_chat.store.store import WorkspaceStore

__all__ = [
    "ChatMessage",
    "ChatSession",
    "EntityQueue",
    "EventEmitter",
    "ParsedEntity",
    "SessionLifecycleManager",
    "WorkspaceStore",
]
