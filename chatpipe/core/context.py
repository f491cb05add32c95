# chatpipe/core/context.py
"""
Context window assembly.

build_context_messages() shapes the raw list (system, recent history, the
current user turn); trim_to_budget() then drops history, newest kept first,
until the estimated size fits the token budget. The system message and the
final user message are never dropped.
"""

from typing import Any, Dict, List, Optional, Sequence, Union

from chatpipe.core.models import Message, Role
from chatpipe.core.tokens import estimate_tokens
from chatpipe.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."
DEFAULT_MAX_MESSAGES = 10
DEFAULT_MAX_TOKENS = 120000

ChatMessage = Dict[str, str]
HistoryItem = Union[Message, Dict[str, Any]]


def to_chat_message(msg: HistoryItem) -> ChatMessage:
    if isinstance(msg, Message):
        return {"role": Role(msg.role).value, "content": msg.content}
    role = msg.get("role")
    if isinstance(role, Role):
        role = role.value
    return {"role": str(role), "content": msg.get("content") or ""}


def build_context_messages(
    history: Sequence[HistoryItem],
    current_user_text: str,
    max_messages: int = DEFAULT_MAX_MESSAGES,
    system_prompt: Optional[str] = None,
) -> List[ChatMessage]:
    """
    Return [system, ...last `max_messages` of history, user].

    History entries are reduced to role/content; all other metadata is
    stripped.
    """
    system = {"role": Role.SYSTEM.value, "content": system_prompt or DEFAULT_SYSTEM_PROMPT}

    recent = list(history)[-max_messages:] if max_messages > 0 else []
    context = [to_chat_message(m) for m in recent]

    user = {"role": Role.USER.value, "content": current_user_text}
    return [system] + context + [user]


def trim_to_budget(
    messages: Sequence[ChatMessage],
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> List[ChatMessage]:
    """
    Fit `messages` into `max_tokens` by dropping the oldest history.

    The first (system) and last (user) messages are fixed. History is walked
    from newest to oldest and the walk stops at the first message that does
    not fit, so the kept history is always a contiguous suffix.
    """
    if not messages:
        return []
    if len(messages) == 1:
        return [messages[0]]

    system_message = messages[0]
    user_message = messages[-1]
    history = list(messages[1:-1])

    fixed = estimate_tokens(system_message["content"]) + estimate_tokens(user_message["content"])
    remaining = max_tokens - fixed

    kept: List[ChatMessage] = []
    for msg in reversed(history):
        cost = estimate_tokens(msg["content"])
        if remaining - cost < 0:
            break
        kept.insert(0, msg)
        remaining -= cost

    dropped = len(history) - len(kept)
    if dropped:
        logger.info(
            "Context trimmed: dropped %d of %d history messages (budget=%d tokens, fixed=%d).",
            dropped,
            len(history),
            max_tokens,
            fixed,
        )

    return [system_message] + kept + [user_message]


def build_api_messages(
    history: Sequence[HistoryItem],
    user_text: str,
    system_prompt: Optional[str],
    max_messages: int = DEFAULT_MAX_MESSAGES,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> List[ChatMessage]:
    """Build and trim in one step: the list that is actually sent to the model."""
    return trim_to_budget(
        build_context_messages(history, user_text, max_messages, system_prompt),
        max_tokens,
    )
