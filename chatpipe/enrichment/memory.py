# chatpipe/enrichment/memory.py
"""
Memory extraction: after a completed turn, ask the model whether the latest
exchange adds to or corrects what is remembered, then patch the memory list.

The model must answer with one of three JSON shapes, validated into a tagged
union on "action":

    {"action": "none"}
    {"action": "add", "memory": "..."}
    {"action": "update", "id": "...", "memory": "..."}

The list is only ever appended to or patched by id. An update naming an id
that is not in the list changes nothing.
"""

import re
from typing import Annotated, Callable, List, Literal, Optional, Sequence, Union

from pydantic import BaseModel, Field, StringConstraints, TypeAdapter, field_validator

from chatpipe.core.models import MemoryEntry, MemorySource, new_id, now_iso
from chatpipe.prompts.memory import (
    build_exchange_message,
    build_memory_extraction_prompt,
    build_project_memory_extraction_prompt,
)
from chatpipe.utils.logging import get_logger

logger = get_logger(__name__)

_CODE_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)

MemoryScope = Literal["user", "project"]
SaveMemories = Callable[[List[MemoryEntry]], object]
# whitespace-only memory text is rejected, not stored
MemoryText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class NoMemoryAction(BaseModel):
    action: Literal["none"] = "none"


class AddMemoryAction(BaseModel):
    action: Literal["add"] = "add"
    memory: MemoryText


class UpdateMemoryAction(BaseModel):
    action: Literal["update"] = "update"
    id: str = Field(min_length=1)
    memory: MemoryText

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value):
        # models sometimes echo numeric ids without quotes
        return str(value) if isinstance(value, (int, float)) else value


MemoryAction = Annotated[
    Union[NoMemoryAction, AddMemoryAction, UpdateMemoryAction],
    Field(discriminator="action"),
]

_memory_action_adapter = TypeAdapter(MemoryAction)


def parse_memory_action(raw: str) -> Union[NoMemoryAction, AddMemoryAction, UpdateMemoryAction]:
    """
    Parse the extractor's reply. Raises ValueError (pydantic's
    ValidationError is one) when the reply is not one of the three shapes.
    """
    cleaned = _CODE_FENCE_RE.sub("", raw or "").strip()
    if not cleaned:
        raise ValueError("Empty memory extraction reply.")
    return _memory_action_adapter.validate_json(cleaned)


def apply_memory_action(
    action: Union[NoMemoryAction, AddMemoryAction, UpdateMemoryAction],
    existing: Sequence[MemoryEntry],
    now: Optional[str] = None,
) -> Optional[List[MemoryEntry]]:
    """
    Return the new memory list, or None when nothing should be written.
    """
    timestamp = now or now_iso()

    if isinstance(action, NoMemoryAction):
        return None

    if isinstance(action, AddMemoryAction):
        entry = MemoryEntry(
            id=new_id(),
            text=action.memory,
            created_at=timestamp,
            source=MemorySource.AUTO,
        )
        return list(existing) + [entry]

    if isinstance(action, UpdateMemoryAction):
        if not any(m.id == action.id for m in existing):
            logger.info("Memory update targets unknown id=%r; leaving list unchanged.", action.id)
            return None
        updated: List[MemoryEntry] = []
        for m in existing:
            if m.id == action.id:
                updated.append(MemoryEntry(
                    id=m.id,
                    text=action.memory,
                    created_at=m.created_at,
                    updated_at=timestamp,
                    source=m.source,
                ))
            else:
                updated.append(m)
        return updated

    raise TypeError(f"Unhandled memory action: {action!r}")


def extract_memory_action(
    client,
    user_text: str,
    assistant_text: str,
    existing: Sequence[MemoryEntry],
    scope: MemoryScope = "user",
    model: Optional[str] = None,
    snippet_chars: int = 500,
) -> Union[NoMemoryAction, AddMemoryAction, UpdateMemoryAction]:
    """Run the extraction call. Any call or parse failure becomes "none"."""
    if scope == "project":
        prompt = build_project_memory_extraction_prompt(existing)
    else:
        prompt = build_memory_extraction_prompt(existing)

    messages = [
        {"role": "system", "content": prompt},
        {"role": "user", "content": build_exchange_message(user_text, assistant_text, snippet_chars)},
    ]
    try:
        raw = client.complete(messages, model=model)
        return parse_memory_action(raw)
    except Exception as e:
        logger.warning("%s memory extraction failed: %s", scope.capitalize(), e)
        return NoMemoryAction()


def extract_and_save_memory(
    client,
    user_text: str,
    assistant_text: str,
    existing: Sequence[MemoryEntry],
    save: SaveMemories,
    scope: MemoryScope = "user",
    model: Optional[str] = None,
    snippet_chars: int = 500,
) -> Optional[List[MemoryEntry]]:
    """
    Extract, apply and persist. Returns the written list, or None when
    nothing was written. Errors are logged and swallowed.
    """
    existing = list(existing or [])
    action = extract_memory_action(client, user_text, assistant_text, existing,
                                   scope=scope, model=model, snippet_chars=snippet_chars)
    memories = apply_memory_action(action, existing)
    if memories is None:
        return None

    try:
        save(memories)
    except Exception as e:
        logger.warning("%s memory save failed: %s", scope.capitalize(), e)
        return None

    logger.info("%s memory %s (entries=%d).", scope.capitalize(), action.action, len(memories))
    return memories


def extract_and_save_user_memory(
    client,
    user_text: str,
    assistant_text: str,
    existing: Sequence[MemoryEntry],
    update_user_memories: SaveMemories,
    model: Optional[str] = None,
    snippet_chars: int = 500,
) -> Optional[List[MemoryEntry]]:
    return extract_and_save_memory(client, user_text, assistant_text, existing,
                                   save=update_user_memories, scope="user",
                                   model=model, snippet_chars=snippet_chars)


def extract_and_save_project_memory(
    client,
    user_text: str,
    assistant_text: str,
    project_id: str,
    existing: Sequence[MemoryEntry],
    update_project_memory: Callable[[str, List[MemoryEntry]], object],
    model: Optional[str] = None,
    snippet_chars: int = 500,
) -> Optional[List[MemoryEntry]]:
    return extract_and_save_memory(client, user_text, assistant_text, existing,
                                   save=lambda memories: update_project_memory(project_id, memories),
                                   scope="project", model=model, snippet_chars=snippet_chars)
