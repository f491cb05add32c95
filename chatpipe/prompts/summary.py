# chatpipe/prompts/summary.py

SUMMARY_SYSTEM_PROMPT = (
    "You are a concise summarization assistant.\n"
    "Summarize the key decisions, facts, and outcomes from this conversation in 3-8 bullet points.\n"
    "Focus on information that would be useful context for someone working on a related task in the same project.\n"
    "Be specific and factual. Do not include pleasantries or meta-commentary.\n"
    "Respond with plain bullet points only, no headers."
)

TITLE_SYSTEM_PROMPT = (
    "You are an assistant that creates short, concise titles. "
    "Respond only with the title, nothing else."
)


def build_title_prompt(user_text: str, assistant_text: str) -> str:
    return (
        "Based on this conversation, generate a short, descriptive title (max 5 words). "
        "Only respond with the title in the same language as the message, nothing else:\n\n"
        f'User: "{(user_text or "")[:150]}"\n'
        f'Assistant: "{(assistant_text or "")[:300]}"'
    )
