# chatpipe/core/titles.py

import re
from typing import Optional

from chatpipe.prompts.summary import TITLE_SYSTEM_PROMPT, build_title_prompt
from chatpipe.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TITLE = "New Chat"

_MARKDOWN_RE = re.compile(r"[#*_~`]")
_TITLE_PREFIX_RE = re.compile(r"^(Title:|Titel:)", re.IGNORECASE)


def truncate_text(text: Optional[str], max_length: int = 50, smart_trim: bool = True) -> str:
    """Cut to `max_length` and add "...", preferring a word boundary past 60%."""
    if not text:
        return ""
    trimmed = text.strip()
    if len(trimmed) <= max_length:
        return trimmed

    truncated = trimmed[:max_length]
    if smart_trim:
        last_space = truncated.rfind(" ")
        if last_space > max_length * 0.6:
            truncated = truncated[:last_space]
    return truncated + "..."


def generate_fallback_title(message: Optional[str]) -> str:
    """First three words of the message, markdown stripped."""
    if not message or not isinstance(message, str):
        return DEFAULT_TITLE
    cleaned = " ".join(_MARKDOWN_RE.sub("", message).split())
    if not cleaned:
        return DEFAULT_TITLE
    return " ".join(cleaned.split(" ")[:3]) or DEFAULT_TITLE


def sanitize_title(title: Optional[str], max_length: int = 100) -> str:
    if not title or not isinstance(title, str):
        return DEFAULT_TITLE
    sanitized = " ".join(re.sub(r"[<>]", "", title).split())
    if not sanitized:
        return DEFAULT_TITLE
    return truncate_text(sanitized, max_length, True)


def generate_title(client, user_text: str, assistant_text: str, model: Optional[str] = None) -> str:
    """
    Ask the model for a short title; any failure or unusable answer falls back
    to the first words of the user message.
    """
    if not user_text and not assistant_text:
        return DEFAULT_TITLE

    fallback = generate_fallback_title(user_text)
    if client is None:
        return fallback

    messages = [
        {"role": "system", "content": TITLE_SYSTEM_PROMPT},
        {"role": "user", "content": build_title_prompt(user_text, assistant_text)},
    ]
    try:
        raw = client.complete(messages, model=model)
    except Exception as e:
        logger.warning("Title generation failed, using fallback: %s", e)
        return fallback

    cleaned = _TITLE_PREFIX_RE.sub("", re.sub(r"['\"]", "", raw.strip())).strip()
    if cleaned and len(cleaned) <= 60:
        return truncate_text(cleaned, 50, True)
    return fallback
