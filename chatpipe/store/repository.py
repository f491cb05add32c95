# chatpipe/store/repository.py

from datetime import datetime, timedelta
import json
import threading
from typing import Any, Dict, List, Optional, Sequence

from chatpipe.core.models import (
    Conversation,
    Document,
    MemoryEntry,
    Message,
    Project,
    Role,
    UserProfile,
    new_id,
    now_iso,
)
from chatpipe.store.db import get_connection, init_db

_TS_FMT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _after(previous: Optional[str]) -> str:
    """A timestamp strictly later than `previous` (now, or previous + 1us)."""
    current = now_iso()
    if not previous or current > previous:
        return current
    try:
        bumped = datetime.strptime(previous, _TS_FMT) + timedelta(microseconds=1)
    except ValueError:
        return current
    return bumped.strftime(_TS_FMT)


def _jsonable(value: Any) -> Any:
    if isinstance(value, MemoryEntry):
        return value.to_dict()
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


class SQLiteStore:
    """
    Reference document store on top of sqlite3.

    Documents are stored as JSON bodies using the camelCase wire keys.
    Messages keep strict insertion order with strictly ascending createdAt;
    every append advances the owning conversation's updatedAt.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        # serializes read-modify-write sequences within this process
        self._lock = threading.RLock()
        init_db(db_path)

    # ---------- conversations ----------

    def create_conversation(
        self, user_id: str, title: str, model: str, project_id: Optional[str] = None
    ) -> Conversation:
        now = now_iso()
        conv = Conversation(
            id=new_id(),
            user_id=user_id,
            title=title or "New Chat",
            model=model,
            created_at=now,
            updated_at=now,
            project_id=project_id,
        )
        with self._lock:
            conn = get_connection(self.db_path)
            try:
                conn.execute(
                    """
                    INSERT INTO conversations (id, user_id, project_id, updated_at, body)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (conv.id, conv.user_id, conv.project_id, conv.updated_at, json.dumps(conv.to_dict())),
                )
                conn.commit()
            finally:
                conn.close()
        return conv

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT body FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        finally:
            conn.close()
        return Conversation.from_dict(json.loads(row["body"])) if row else None

    def update_conversation(self, conversation_id: str, patch: Dict[str, Any]) -> None:
        with self._lock:
            conn = get_connection(self.db_path)
            try:
                row = conn.execute("SELECT body FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
                if row is None:
                    raise KeyError(f"Conversation not found: {conversation_id}")
                body = json.loads(row["body"])
                body.update({k: _jsonable(v) for k, v in patch.items() if k != "id"})
                conn.execute(
                    "UPDATE conversations SET project_id = ?, updated_at = ?, body = ? WHERE id = ?",
                    (body.get("projectId"), body.get("updatedAt"), json.dumps(body), conversation_id),
                )
                conn.commit()
            finally:
                conn.close()

    def list_conversations(self, user_id: str, include_archived: bool = False) -> List[Conversation]:
        """Most recently active first."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT body FROM conversations WHERE user_id = ? ORDER BY updated_at DESC",
                (user_id,),
            ).fetchall()
        finally:
            conn.close()
        convs = [Conversation.from_dict(json.loads(r["body"])) for r in rows]
        return convs if include_archived else [c for c in convs if not c.is_archived]

    def delete_conversation(self, conversation_id: str) -> None:
        """Deletes the conversation, its messages, and the project back-reference."""
        with self._lock:
            conv = self.get_conversation(conversation_id)
            if conv is None:
                return
            conn = get_connection(self.db_path)
            try:
                conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))
                conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
                conn.commit()
            finally:
                conn.close()
            if conv.project_id:
                project = self.get_project(conv.project_id)
                if project is not None and conversation_id in project.conversation_ids:
                    project.conversation_ids.remove(conversation_id)
                    self._save_project(project)

    # ---------- messages ----------

    def get_messages(self, conversation_id: str, limit: Optional[int] = None) -> List[Message]:
        """The last `limit` messages (all when None), oldest first."""
        conn = get_connection(self.db_path)
        try:
            if limit is None:
                rows = conn.execute(
                    "SELECT body FROM messages WHERE conversation_id = ? ORDER BY seq ASC",
                    (conversation_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT body FROM (
                        SELECT seq, body FROM messages WHERE conversation_id = ?
                        ORDER BY seq DESC LIMIT ?
                    ) ORDER BY seq ASC
                    """,
                    (conversation_id, limit),
                ).fetchall()
        finally:
            conn.close()
        return [Message.from_dict(json.loads(r["body"])) for r in rows]

    def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        model: Optional[str] = None,
        attachments: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> Message:
        with self._lock:
            conn = get_connection(self.db_path)
            try:
                conv_row = conn.execute(
                    "SELECT body FROM conversations WHERE id = ?", (conversation_id,)
                ).fetchone()
                if conv_row is None:
                    raise KeyError(f"Conversation not found: {conversation_id}")
                last = conn.execute(
                    "SELECT MAX(created_at) AS last FROM messages WHERE conversation_id = ?",
                    (conversation_id,),
                ).fetchone()

                msg = Message(
                    id=new_id(),
                    role=Role(role),
                    content=content,
                    created_at=_after(last["last"] if last else None),
                    model=model,
                    attachments=list(attachments or []),
                )
                conv_body = json.loads(conv_row["body"])
                conv_body["updatedAt"] = _after(max(conv_body.get("updatedAt") or "", msg.created_at))

                conn.execute(
                    "INSERT INTO messages (id, conversation_id, created_at, body) VALUES (?, ?, ?, ?)",
                    (msg.id, conversation_id, msg.created_at, json.dumps(msg.to_dict())),
                )
                conn.execute(
                    "UPDATE conversations SET updated_at = ?, body = ? WHERE id = ?",
                    (conv_body["updatedAt"], json.dumps(conv_body), conversation_id),
                )
                conn.commit()
            finally:
                conn.close()
        return msg

    def delete_message(self, conversation_id: str, message_id: str) -> None:
        with self._lock:
            conn = get_connection(self.db_path)
            try:
                conn.execute(
                    "DELETE FROM messages WHERE conversation_id = ? AND id = ?",
                    (conversation_id, message_id),
                )
                conn.commit()
            finally:
                conn.close()

    # ---------- projects ----------

    def create_project(
        self,
        user_id: str,
        title: str,
        description: str = "",
        instructions: Optional[str] = None,
        documents: Sequence[Dict[str, Any]] = (),
    ) -> Project:
        now = now_iso()
        project = Project(
            id=new_id(),
            user_id=user_id,
            title=title,
            created_at=now,
            updated_at=now,
            description=description,
            instructions=instructions,
            documents=[
                Document.from_dict({"id": d.get("id") or new_id(), "createdAt": now, **d})
                for d in documents
            ],
        )
        with self._lock:
            conn = get_connection(self.db_path)
            try:
                conn.execute(
                    "INSERT INTO projects (id, user_id, body) VALUES (?, ?, ?)",
                    (project.id, project.user_id, json.dumps(project.to_dict())),
                )
                conn.commit()
            finally:
                conn.close()
        return project

    def get_project(self, project_id: str) -> Optional[Project]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT body FROM projects WHERE id = ?", (project_id,)).fetchone()
        finally:
            conn.close()
        return Project.from_dict(json.loads(row["body"])) if row else None

    def _save_project(self, project: Project) -> None:
        project.updated_at = _after(project.updated_at)
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                "UPDATE projects SET body = ? WHERE id = ?",
                (json.dumps(project.to_dict()), project.id),
            )
            conn.commit()
        finally:
            conn.close()

    def add_conversation_to_project(self, project_id: str, conversation_id: str) -> None:
        with self._lock:
            project = self.get_project(project_id)
            if project is None:
                raise KeyError(f"Project not found: {project_id}")
            if conversation_id not in project.conversation_ids:
                project.conversation_ids.append(conversation_id)
                self._save_project(project)
            self.update_conversation(conversation_id, {"projectId": project_id})

    def get_project_conversations(self, project_id: str) -> List[Conversation]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT body FROM conversations WHERE project_id = ? ORDER BY updated_at DESC",
                (project_id,),
            ).fetchall()
        finally:
            conn.close()
        return [Conversation.from_dict(json.loads(r["body"])) for r in rows]

    def update_project_memory(self, project_id: str, memories: List[MemoryEntry]) -> None:
        with self._lock:
            project = self.get_project(project_id)
            if project is None:
                raise KeyError(f"Project not found: {project_id}")
            project.memories = list(memories)
            self._save_project(project)

    # ---------- user profiles ----------

    def get_user_profile(self, user_id: str) -> UserProfile:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT body FROM user_profiles WHERE user_id = ?", (user_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            return UserProfile(user_id=user_id)
        return UserProfile.from_dict(json.loads(row["body"]))

    def update_user_profile(self, user_id: str, patch: Dict[str, Any]) -> None:
        with self._lock:
            body = self.get_user_profile(user_id).to_dict()
            body.update({k: _jsonable(v) for k, v in patch.items() if k != "userId"})
            conn = get_connection(self.db_path)
            try:
                conn.execute(
                    """
                    INSERT INTO user_profiles (user_id, body) VALUES (?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET body = excluded.body
                    """,
                    (user_id, json.dumps(body)),
                )
                conn.commit()
            finally:
                conn.close()
