# chatpipe/enrichment/summary.py

from typing import Any, Callable, Dict, Optional, Sequence

from chatpipe.core.context import HistoryItem, to_chat_message
from chatpipe.core.models import now_iso
from chatpipe.prompts.summary import SUMMARY_SYSTEM_PROMPT
from chatpipe.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_SUMMARY_MAX_CHARS = 8000


def build_summary_transcript(
    messages: Sequence[HistoryItem],
    user_text: str,
    assistant_text: str,
    max_chars: int = DEFAULT_SUMMARY_MAX_CHARS,
) -> str:
    """
    Prior messages plus the new exchange as "User:/Assistant:" blocks,
    capped to exactly `max_chars` characters. The cap is a plain character
    cut, not word-aware.
    """
    lines = []
    for msg in messages:
        m = to_chat_message(msg)
        speaker = "User" if m["role"] == "user" else "Assistant"
        lines.append(f"{speaker}: {m['content']}")
    lines.append(f"User: {user_text}")
    lines.append(f"Assistant: {assistant_text}")
    return "\n\n".join(lines)[:max_chars]


def generate_and_save_conversation_summary(
    client,
    conversation_id: str,
    messages: Sequence[HistoryItem],
    user_text: str,
    assistant_text: str,
    update_conversation: Callable[[str, Dict[str, Any]], object],
    model: Optional[str] = None,
    max_chars: int = DEFAULT_SUMMARY_MAX_CHARS,
) -> Optional[str]:
    """
    Summarize the conversation and store it on the conversation document.

    Returns the stored summary, or None when nothing was written. Errors are
    logged and swallowed.
    """
    transcript = build_summary_transcript(messages, user_text, assistant_text, max_chars)
    try:
        summary = client.complete(
            [
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": transcript},
            ],
            model=model,
        ).strip()
    except Exception as e:
        logger.warning("Summary generation failed for conversation %s: %s", conversation_id, e)
        return None

    if not summary:
        return None

    try:
        update_conversation(conversation_id, {"summary": summary, "summaryUpdatedAt": now_iso()})
    except Exception as e:
        logger.warning("Summary save failed for conversation %s: %s", conversation_id, e)
        return None

    logger.info("Summary updated for conversation %s (%d chars).", conversation_id, len(summary))
    return summary
