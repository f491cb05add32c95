# chatpipe/core/tokens.py

from typing import Optional

# Rough provider-agnostic ratio: ~4 characters per token
CHARS_PER_TOKEN = 4


def estimate_tokens(text: Optional[str]) -> int:
    """
    Approximate the token cost of a text blob from its length alone.

    Not a tokenizer: only a stable, monotonic ordering is needed for
    trimming decisions.
    """
    if not text:
        return 0
    return -(-len(text) // CHARS_PER_TOKEN)
