# chatpipe/core/persistence.py
"""
The document-store operations the pipeline consumes.

Storage is owned by an external collaborator; this protocol is all the
pipeline assumes about it. chatpipe.store.repository.SQLiteStore is a
reference implementation.
"""

from typing import Any, Dict, List, Optional, Protocol, Sequence

from chatpipe.core.models import Conversation, MemoryEntry, Message, Project, UserProfile


class DocumentStore(Protocol):
    def create_conversation(
        self, user_id: str, title: str, model: str, project_id: Optional[str] = None
    ) -> Conversation: ...

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]: ...

    def update_conversation(self, conversation_id: str, patch: Dict[str, Any]) -> None: ...

    def get_messages(self, conversation_id: str, limit: Optional[int] = None) -> List[Message]: ...

    def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        model: Optional[str] = None,
        attachments: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> Message: ...

    def delete_message(self, conversation_id: str, message_id: str) -> None: ...

    def get_project(self, project_id: str) -> Optional[Project]: ...

    def add_conversation_to_project(self, project_id: str, conversation_id: str) -> None: ...

    def get_project_conversations(self, project_id: str) -> List[Conversation]: ...

    def update_project_memory(self, project_id: str, memories: List[MemoryEntry]) -> None: ...

    def get_user_profile(self, user_id: str) -> UserProfile: ...

    def update_user_profile(self, user_id: str, patch: Dict[str, Any]) -> None: ...
