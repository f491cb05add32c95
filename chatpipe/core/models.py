# chatpipe/core/models.py

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid


def now_iso() -> str:
    """UTC timestamp with microseconds; sorts lexically in time order."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def new_id() -> str:
    return uuid.uuid4().hex


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class AttachmentType(str, Enum):
    CODE = "code"
    IMAGE = "image"
    DOCUMENT = "document"
    TEXT = "text"
    FILE = "file"


class MemorySource(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


@dataclass
class MemoryEntry:
    id: str
    text: str
    created_at: str
    updated_at: Optional[str] = None
    source: MemorySource = MemorySource.AUTO

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "text": self.text,
            "createdAt": self.created_at,
            "source": MemorySource(self.source).value,
        }
        if self.updated_at:
            data["updatedAt"] = self.updated_at
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryEntry":
        return cls(
            id=str(data["id"]),
            text=data.get("text") or "",
            created_at=data.get("createdAt") or now_iso(),
            updated_at=data.get("updatedAt"),
            source=MemorySource(data.get("source") or "manual"),
        )


@dataclass
class Attachment:
    """Pending-input attachment. Never persisted as-is."""
    id: str
    type: AttachmentType
    name: str
    content: Optional[str] = None
    preview: Optional[str] = None
    file: Any = None


@dataclass
class Message:
    id: str
    role: Role
    content: str
    created_at: str
    model: Optional[str] = None
    attachments: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "role": Role(self.role).value,
            "content": self.content,
            "createdAt": self.created_at,
        }
        if self.model:
            data["model"] = self.model
        if self.attachments:
            data["attachments"] = list(self.attachments)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=str(data["id"]),
            role=Role(data["role"]),
            content=data.get("content") or "",
            created_at=data.get("createdAt") or now_iso(),
            model=data.get("model"),
            attachments=list(data.get("attachments") or []),
        )


@dataclass
class Conversation:
    id: str
    user_id: str
    title: str
    model: str
    created_at: str
    updated_at: str
    project_id: Optional[str] = None
    summary: Optional[str] = None
    summary_updated_at: Optional[str] = None
    is_archived: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "model": self.model,
            "projectId": self.project_id,
            "summary": self.summary,
            "summaryUpdatedAt": self.summary_updated_at,
            "isArchived": self.is_archived,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        return cls(
            id=str(data["id"]),
            user_id=str(data.get("userId") or ""),
            title=data.get("title") or "New Chat",
            model=data.get("model") or "",
            created_at=data.get("createdAt") or now_iso(),
            updated_at=data.get("updatedAt") or data.get("createdAt") or now_iso(),
            project_id=data.get("projectId"),
            summary=data.get("summary"),
            summary_updated_at=data.get("summaryUpdatedAt"),
            is_archived=bool(data.get("isArchived", False)),
        )


@dataclass
class Document:
    id: str
    title: str
    type: str
    content: str
    created_at: str
    updated_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "type": self.type,
            "content": self.content,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Document":
        created = data.get("createdAt") or now_iso()
        return cls(
            id=str(data["id"]),
            title=data.get("title") or "",
            type=data.get("type") or "text",
            content=data.get("content") or "",
            created_at=created,
            updated_at=data.get("updatedAt") or created,
        )


@dataclass
class SiblingSummary:
    title: str
    summary: str


@dataclass
class Project:
    id: str
    user_id: str
    title: str
    created_at: str
    updated_at: str
    description: str = ""
    instructions: Optional[str] = None
    documents: List[Document] = field(default_factory=list)
    memories: List[MemoryEntry] = field(default_factory=list)
    conversation_ids: List[str] = field(default_factory=list)
    is_archived: bool = False
    # Transient: attached per turn, never persisted
    conversation_summaries: List[SiblingSummary] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "description": self.description,
            "instructions": self.instructions,
            "documents": [d.to_dict() for d in self.documents],
            "memories": [m.to_dict() for m in self.memories],
            "conversationIds": list(self.conversation_ids),
            "isArchived": self.is_archived,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Project":
        created = data.get("createdAt") or now_iso()
        return cls(
            id=str(data["id"]),
            user_id=str(data.get("userId") or ""),
            title=data.get("title") or "",
            created_at=created,
            updated_at=data.get("updatedAt") or created,
            description=data.get("description") or "",
            instructions=data.get("instructions"),
            documents=[Document.from_dict(d) for d in data.get("documents") or []],
            memories=[MemoryEntry.from_dict(m) for m in data.get("memories") or []],
            conversation_ids=[str(c) for c in data.get("conversationIds") or []],
            is_archived=bool(data.get("isArchived", False)),
        )


@dataclass
class UserProfile:
    user_id: str
    model_preferences: str = ""
    memories: List[MemoryEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "preferences": {"modelPreferences": self.model_preferences},
            "memories": [m.to_dict() for m in self.memories],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserProfile":
        prefs = data.get("preferences") or {}
        return cls(
            user_id=str(data.get("userId") or ""),
            model_preferences=prefs.get("modelPreferences") or "",
            memories=[MemoryEntry.from_dict(m) for m in data.get("memories") or []],
        )
