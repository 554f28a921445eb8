from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from typing import Any

ENTITY_TYPES = ("project", "task", "goal", "milestone", "knowledge", "insight")
MESSAGE_ROLES = ("user", "assistant", "system")


def _load_json(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class ChatSession:
    id: str
    owner_id: str
    title: str | None
    archived: bool
    message_count: int
    created_at: str
    updated_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ChatSession:
        return cls(
            id=str(row["id"]),
            owner_id=str(row["owner_id"]),
            title=row["title"],
            archived=bool(row["archived"]),
            message_count=int(row["message_count"]),
            created_at=str(row["created_at"]),
            updated_at=str(row["updated_at"]),
        )

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "title": self.title,
            "archived": self.archived,
            "messageCount": self.message_count,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_json(cls, data: dict) -> ChatSession:
        return cls(
            id=str(data["id"]),
            owner_id=str(data["ownerId"]),
            title=data.get("title"),
            archived=bool(data.get("archived", False)),
            message_count=int(data.get("messageCount", 0)),
            created_at=str(data["createdAt"]),
            updated_at=str(data["updatedAt"]),
        )


@dataclass(frozen=True)
class ChatMessage:
    id: str
    session_id: str
    role: str
    content: str
    created_at: str
    client_message_id: str | None = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ChatMessage:
        return cls(
            id=str(row["id"]),
            session_id=str(row["session_id"]),
            role=str(row["role"]),
            content=str(row["content"]),
            created_at=str(row["created_at"]),
            client_message_id=row["client_message_id"],
            metadata=_load_json(row["metadata_json"], {}),
        )

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "role": self.role,
            "content": self.content,
            "createdAt": self.created_at,
            "clientMessageId": self.client_message_id,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_json(cls, data: dict) -> ChatMessage:
        return cls(
            id=str(data["id"]),
            session_id=str(data["sessionId"]),
            role=str(data["role"]),
            content=str(data["content"]),
            created_at=str(data["createdAt"]),
            client_message_id=data.get("clientMessageId"),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass(frozen=True)
class ParsedEntity:
    id: str
    owner_id: str
    source_message_id: str | None
    entity_type: str
    entity_data: dict
    processed: bool
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ParsedEntity:
        return cls(
            id=str(row["id"]),
            owner_id=str(row["owner_id"]),
            source_message_id=row["source_message_id"],
            entity_type=str(row["entity_type"]),
            entity_data=_load_json(row["entity_data"], {}),
            processed=bool(row["processed"]),
            created_at=str(row["created_at"]),
        )

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "sourceMessageId": self.source_message_id,
            "entityType": self.entity_type,
            "entityData": self.entity_data,
            "processed": self.processed,
            "createdAt": self.created_at,
        }
