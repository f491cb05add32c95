# chatpipe/prompts/system.py
"""
System prompt composition.

Section order is fixed: base persona, user preferences, user memories, then
the project context block (instructions, documents, project memories,
sibling-conversation summaries). Empty sections are left out entirely.
"""

from typing import List, Optional, Sequence

from chatpipe.core.models import MemoryEntry, Project

BASE_PERSONA = "You are a helpful AI assistant."

SIBLING_SUMMARIES_INTRO = (
    "The following are summaries of other conversations in this project. "
    "Use them to answer questions or maintain continuity across chats."
)


def _bullet_list(memories: Sequence[MemoryEntry]) -> str:
    return "\n".join(f"- {m.text}" for m in memories)


def build_project_context(project: Optional[Project]) -> str:
    if project is None:
        return ""

    parts: List[str] = []

    instructions = (project.instructions or "").strip()
    if instructions:
        parts.append(f"## Project Instructions\n{instructions}")

    if project.documents:
        doc_blocks = "\n\n".join(
            f"### {doc.title or 'Document'} ({doc.type or 'text'})\n{doc.content}"
            for doc in project.documents
        )
        parts.append(f"## Project Files\n{doc_blocks}")

    if project.memories:
        parts.append(f"## Project Memory\n{_bullet_list(project.memories)}")

    if project.conversation_summaries:
        summary_blocks = "\n\n".join(
            f"### {s.title or 'Untitled Chat'}\n{s.summary}"
            for s in project.conversation_summaries
        )
        parts.append(
            "## Knowledge from other chats in this project\n"
            f"{SIBLING_SUMMARIES_INTRO}\n\n{summary_blocks}"
        )

    if not parts:
        return ""

    body = "\n\n".join(parts)
    return f'\n\n---\n# Project Context: "{project.title}"\n\n{body}'


def compose_system_prompt(
    memories: Optional[Sequence[MemoryEntry]] = None,
    base_preferences: str = "",
    project: Optional[Project] = None,
) -> str:
    prompt = BASE_PERSONA

    if base_preferences and base_preferences.strip():
        prompt += f"\n\nUser preferences: {base_preferences.strip()}"

    if memories:
        prompt += f"\n\nWhat you remember about this user:\n{_bullet_list(memories)}"

    prompt += build_project_context(project)
    return prompt
