# chatpipe/prompts/memory.py

from typing import Sequence

from chatpipe.core.models import MemoryEntry

RESPONSE_SHAPES = (
    '{"action": "none"}\n'
    '{"action": "add", "memory": "Short, factual memory text"}\n'
    '{"action": "update", "id": "<existing memory id>", "memory": "Updated memory text"}'
)


def _existing_list(memories: Sequence[MemoryEntry], empty_text: str) -> str:
    if not memories:
        return empty_text
    return "\n".join(f"{i}. [id:{m.id}] {m.text}" for i, m in enumerate(memories, start=1))


def build_memory_extraction_prompt(existing: Sequence[MemoryEntry] = ()) -> str:
    existing_list = _existing_list(existing, "No existing memories.")
    return f"""You are a memory extraction assistant. Analyze the conversation and determine if there is any important personal information worth remembering about the user.

Existing memories about this user:
{existing_list}

Your task:
- If the conversation contains NEW information not covered by existing memories, return action "add"
- If the conversation UPDATES or CONTRADICTS an existing memory, return action "update" with the id of the memory to replace
- If nothing new or relevant is found, return action "none"

Examples of memory-worthy information:
- Personal preferences ("I prefer dark mode", "I like concise answers")
- Professional context ("I'm a backend developer", "I work at a startup")
- Personal facts ("I'm learning German", "I have 2 kids")
- Recurring needs ("I always need type hints", "I use FastAPI")

Respond ONLY with valid JSON, one of these three shapes:
{RESPONSE_SHAPES}"""


def build_project_memory_extraction_prompt(existing: Sequence[MemoryEntry] = ()) -> str:
    existing_list = _existing_list(existing, "No existing project memories.")
    return f"""You are a project knowledge extraction assistant. Analyze the conversation and determine if it contains important project-specific information worth remembering.

Existing project memories:
{existing_list}

Extract information relevant to the PROJECT, not the person. This includes:
- Technical decisions ("We use PostgreSQL", "Auth is handled by the gateway")
- Architecture choices ("Handlers live in /api", "Workers share one queue")
- Design decisions ("Primary color is neutral-900", "Buttons are fully rounded")
- Conventions ("Always use type hints", "Prefix private helpers with an underscore")
- Constraints or requirements ("Must support mobile", "No external UI libraries")
- Resolved problems ("Fixed CORS by adding a header", "Pagination is cursor-based")

Do NOT extract personal preferences, user habits, or anything that belongs to the person rather than the project.

Respond ONLY with valid JSON, one of these three shapes:
{RESPONSE_SHAPES}"""


def build_exchange_message(user_text: str, assistant_text: str, snippet_chars: int = 500) -> str:
    """The user turn given to the extractor: the latest exchange, reply clipped."""
    return f'User said: "{user_text}"\n\nAssistant responded: "{(assistant_text or "")[:snippet_chars]}"'
